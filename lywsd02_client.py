#!/usr/bin/env python3
"""
LYWSD02 Client
Sets the time and optionally the temperature units on a Xiaomi LYWSD02 device via Bluetooth Low Energy
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from lywsd02_blocking import BlockingSession, init_and_run
from lywsd02_protocol import BLEError, TemperatureUnits
from lywsd02_session import SessionConfig

logger = logging.getLogger("lywsd02")

USAGE = "LYWSD02 [--name NAME] [--scan-timeout S] [--timeout S] [-v] [Celcius | C | Fahrenheit | F]"
DESCRIPTION = """\
Where:
  Celcius or C sets temperature display to be in Celcius.
  Fahrenheit or F sets temperature display to be in Fahrenheit.

  The device's time will always be updated to match the current local time
  even if temperature setting is left blank.
"""

UNITS_FLAGS = {
    "celcius": TemperatureUnits.CELSIUS,
    "c": TemperatureUnits.CELSIUS,
    "fahrenheit": TemperatureUnits.FAHRENHEIT,
    "f": TemperatureUnits.FAHRENHEIT,
}


@dataclass(frozen=True)
class CommandLineParams:
    units: Optional[TemperatureUnits] = None
    config: SessionConfig = field(default_factory=SessionConfig)
    verbose: bool = False


class UsageError(Exception):
    pass


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="LYWSD02",
        usage=USAGE,
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("units", nargs="*", help="Temperature units: Celcius, C, Fahrenheit or F")
    parser.add_argument("--name", default=None, help="Only connect to a device advertising this name")
    parser.add_argument("--scan-timeout", type=float, default=SessionConfig.scan_timeout, metavar="S", help="Scan timeout in seconds")
    parser.add_argument("--timeout", type=float, default=SessionConfig.connect_timeout, metavar="S", help="Connection timeout in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def parse_units(value: str) -> TemperatureUnits:
    """
    Map a units flag to TemperatureUnits (case-insensitive)

    Raises:
        UsageError: If the flag is not recognized
    """
    units = UNITS_FLAGS.get(value.lower())
    if units is None:
        raise UsageError(f"'{value}' isn't a valid command line flag.")
    return units


def parse_command_line(argv: List[str]) -> CommandLineParams:
    """
    Parse arguments (without the program name)

    Several units flags may be given, the last one wins. They may be
    interleaved with the options.

    Raises:
        UsageError: On any invalid argument
    """
    args = build_parser().parse_intermixed_args(argv)

    units = None
    for value in args.units:
        units = parse_units(value)

    config = SessionConfig(
        device_name=args.name,
        scan_timeout=args.scan_timeout,
        connect_timeout=args.timeout,
    )
    return CommandLineParams(units=units, config=config, verbose=args.verbose)


def _report(result: BLEError) -> None:
    if result == BLEError.NOT_CONNECTED:
        print("BLE connection lost!")
    elif result != BLEError.NONE:
        logger.error(f"BLE transmit returned error: {int(result)} ({result.name})")


def worker_main(session: BlockingSession, params: CommandLineParams) -> None:
    """
    Connect, push the current time, set the units if requested, disconnect

    Failures are logged and the sequence moves on; disconnect always runs once.
    """
    print("Attempting to connect to LYWSD02 device...")
    with session.connection(params.config.device_name) as result:
        if result != BLEError.NONE:
            logger.error("Failed to connect to LYWSD02 device.")
        else:
            print("LYWSD02 device connected!")

            print("Updating time...")
            _report(session.set_current_time())

            if params.units is TemperatureUnits.CELSIUS:
                print("Setting temperature units to Celcius...")
                _report(session.set_celsius())
            elif params.units is TemperatureUnits.FAHRENHEIT:
                print("Setting temperature units to Fahrenheit...")
                _report(session.set_fahrenheit())

        print("Disconnecting...")


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - [%(name)s] %(message)s",
        datefmt="%H:%M:%S"
    )


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    try:
        params = parse_command_line(argv)
    except UsageError as e:
        print(f"error: {e}", file=sys.stderr)
        build_parser().print_help()
        return 1

    configure_logging(params.verbose)

    try:
        init_and_run(lambda session: worker_main(session, params), params.config)
    except KeyboardInterrupt:
        print("\n[INTERRUPTED] Operation cancelled by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
