"""
LYWSD02 Protocol Definitions
Error codes, connection states, characteristic UUIDs and wire codecs for the
Xiaomi LYWSD02 clock / thermometer
"""

import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Callable, Optional, Tuple

# UUIDs
SERVICE_UUID = "ebe0ccb0-7a0a-4b0c-8a1a-6ff2997da3a6"
TIME_CHAR_UUID = "ebe0ccb7-7a0a-4b0c-8a1a-6ff2997da3a6"
UNITS_CHAR_UUID = "ebe0ccbe-7a0a-4b0c-8a1a-6ff2997da3a6"
DATA_CHAR_UUID = "ebe0ccc1-7a0a-4b0c-8a1a-6ff2997da3a6"
BATTERY_CHAR_UUID = "ebe0ccc4-7a0a-4b0c-8a1a-6ff2997da3a6"

# Xiaomi MiBeacon service data key, present in LYWSD02 advertisements
MIBEACON_SERVICE_UUID = "0000fe95-0000-1000-8000-00805f9b34fb"
DEFAULT_DEVICE_NAME = "LYWSD02"

# Units characteristic values
UNITS_CELSIUS = 0xFF
UNITS_FAHRENHEIT = 0x01

# Time characteristic: timestamp(4, unsigned) + utc offset in hours(1, signed)
TIME_STRUCT = struct.Struct("<Ib")
TIME_NO_OFFSET_STRUCT = struct.Struct("<I")

# Max drift (seconds) between the written time and the value read back
TIME_TOLERANCE = 5


class BLEError(IntEnum):
    """Integer result codes returned by every session operation"""
    NONE = 0            # Success
    CONNECT = 1         # Connection to device failed
    PARAM = 2           # Invalid parameter or call sequence
    MEMORY = 3          # Out of memory
    NOT_CONNECTED = 4   # No device connected
    NO_REQUEST = 5      # Not waiting for a response from a request
    TIMEOUT = 6         # Timed out waiting for response
    EMPTY = 7           # The queue was empty
    BAD_RESPONSE = 8    # Unexpected response from device
    WRITE_FAILED = 9    # Write failed


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


# Legal edges of the connection state machine
STATE_TRANSITIONS = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTING, ConnectionState.DISCONNECTED}),
    ConnectionState.DISCONNECTING: frozenset({ConnectionState.DISCONNECTED}),
}


class TemperatureUnits(Enum):
    CELSIUS = "C"
    FAHRENHEIT = "F"


@dataclass(frozen=True)
class Command:
    """
    Immutable description of one write to the device

    Attributes:
        name: Human readable name used in log messages
        char_uuid: Characteristic the payload is written to
        payload: Bytes to write
        response_uuid: Characteristic the reply arrives on, None for fire-and-forget writes
        read_response: Read the reply back (True) or wait for a notification (False)
        validator: Returns True if the reply bytes are acceptable
    """
    name: str
    char_uuid: str
    payload: bytes
    response_uuid: Optional[str] = None
    read_response: bool = True
    validator: Optional[Callable[[bytes], bool]] = field(default=None, compare=False, repr=False)

    @property
    def expects_response(self) -> bool:
        return self.response_uuid is not None

    def accepts(self, data: bytes) -> bool:
        """Check a reply against the command's validator"""
        if self.validator is None:
            return True
        try:
            return bool(self.validator(data))
        except ValueError:
            return False


def utc_offset_hours(moment: datetime) -> int:
    """Whole-hour UTC offset of an aware datetime, truncated toward zero"""
    offset = moment.utcoffset() or timedelta(0)
    return int(offset.total_seconds() / 3600)


def encode_time(moment: Optional[datetime] = None) -> bytes:
    """
    Serialize a wall-clock time into the time characteristic layout

    Args:
        moment: Time to encode, naive values are taken as local time. Defaults to now

    Returns:
        5 byte payload: timestamp + utc offset in hours
    """
    if moment is None:
        moment = datetime.now()
    if moment.tzinfo is None:
        moment = moment.astimezone()

    timestamp = int(moment.timestamp())
    if not 0 <= timestamp <= 0xFFFFFFFF:
        raise ValueError(f"Time {moment.isoformat()} is outside the device range")

    offset = utc_offset_hours(moment)
    if not -128 <= offset <= 127:
        raise ValueError(f"UTC offset {offset}h cannot be encoded")

    return TIME_STRUCT.pack(timestamp, offset)


def unpack_time(data: bytes) -> Tuple[int, int]:
    """
    Split a time characteristic value into (timestamp, utc offset hours)

    Raises:
        ValueError: If the payload has the wrong length
    """
    if len(data) == TIME_STRUCT.size:
        return TIME_STRUCT.unpack(data)
    if len(data) == TIME_NO_OFFSET_STRUCT.size:
        (timestamp,) = TIME_NO_OFFSET_STRUCT.unpack(data)
        return timestamp, 0
    raise ValueError(f"Time payload must be {TIME_STRUCT.size} or {TIME_NO_OFFSET_STRUCT.size} bytes, got {len(data)}")


def decode_time(data: bytes) -> datetime:
    """
    Decode a time characteristic value into an aware datetime

    The returned datetime carries the device's utc offset, so its calendar
    fields are the ones shown on the device display.
    """
    timestamp, offset = unpack_time(bytes(data))
    return datetime.fromtimestamp(timestamp, timezone(timedelta(hours=offset)))


def encode_units(units: TemperatureUnits) -> bytes:
    if units is TemperatureUnits.CELSIUS:
        return bytes([UNITS_CELSIUS])
    if units is TemperatureUnits.FAHRENHEIT:
        return bytes([UNITS_FAHRENHEIT])
    raise ValueError(f"Unknown temperature units: {units!r}")


def decode_units(data: bytes) -> TemperatureUnits:
    if len(data) != 1:
        raise ValueError(f"Units payload must be 1 byte, got {len(data)}")
    if data[0] == UNITS_CELSIUS:
        return TemperatureUnits.CELSIUS
    if data[0] == UNITS_FAHRENHEIT:
        return TemperatureUnits.FAHRENHEIT
    raise ValueError(f"Unknown units value 0x{data[0]:02X}")


def _time_matches(written: bytes) -> Callable[[bytes], bool]:
    expected_timestamp, expected_offset = unpack_time(written)

    def validate(data: bytes) -> bool:
        timestamp, offset = unpack_time(bytes(data))
        if len(data) == TIME_STRUCT.size and offset != expected_offset:
            return False
        return abs(timestamp - expected_timestamp) <= TIME_TOLERANCE

    return validate


# Concrete commands

def set_current_time_command(now: Optional[datetime] = None) -> Command:
    """
    Build the set-current-time command

    The time characteristic is read back after the write and must match what
    was written, within TIME_TOLERANCE seconds.

    Args:
        now: Time to push, defaults to the current local time

    Returns:
        Command expecting a read-back response on the time characteristic
    """
    payload = encode_time(now)
    return Command(
        name="set-current-time",
        char_uuid=TIME_CHAR_UUID,
        payload=payload,
        response_uuid=TIME_CHAR_UUID,
        read_response=True,
        validator=_time_matches(payload),
    )


def set_units_command(units: TemperatureUnits) -> Command:
    return Command(
        name=f"set-units-{units.name.lower()}",
        char_uuid=UNITS_CHAR_UUID,
        payload=encode_units(units),
    )


def set_celsius_command() -> Command:
    return set_units_command(TemperatureUnits.CELSIUS)


def set_fahrenheit_command() -> Command:
    return set_units_command(TemperatureUnits.FAHRENHEIT)
