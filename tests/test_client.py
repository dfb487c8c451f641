import io
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest import mock

import lywsd02_client
from lywsd02_blocking import BlockingSession
from lywsd02_client import CommandLineParams, UsageError, main, parse_command_line, worker_main
from lywsd02_protocol import BLEError, TemperatureUnits
from lywsd02_session import SessionConfig


class ScriptedSession(BlockingSession):
    """BlockingSession returning scripted results and recording the calls made"""

    def __init__(self, **results):
        self.results = results
        self.calls = []

    def _result(self, name):
        self.calls.append(name)
        return self.results.get(name, BLEError.NONE)

    def connect(self, device_name=None):
        self.device_name = device_name
        return self._result("connect")

    def disconnect(self):
        return self._result("disconnect")

    def set_current_time(self, now=None):
        return self._result("set_current_time")

    def set_celsius(self):
        return self._result("set_celsius")

    def set_fahrenheit(self):
        return self._result("set_fahrenheit")


class ParseCommandLine(unittest.TestCase):
    def test_no_arguments_leaves_units_alone(self):
        params = parse_command_line([])
        self.assertIsNone(params.units)
        self.assertIsNone(params.config.device_name)

    def test_units_flags_are_case_insensitive(self):
        for flag in ("Celcius", "celcius", "CELCIUS", "c", "C"):
            self.assertIs(parse_command_line([flag]).units, TemperatureUnits.CELSIUS, flag)
        for flag in ("Fahrenheit", "FAHRENHEIT", "f", "F"):
            self.assertIs(parse_command_line([flag]).units, TemperatureUnits.FAHRENHEIT, flag)

    def test_last_units_flag_wins(self):
        self.assertIs(parse_command_line(["F", "C"]).units, TemperatureUnits.CELSIUS)

    def test_invalid_flag(self):
        with self.assertRaisesRegex(UsageError, "'kelvin' isn't a valid command line flag."):
            parse_command_line(["kelvin"])

    def test_only_original_spelling_of_celcius(self):
        for flag in ("Celsius", "celsius", "CELSIUS"):
            with self.assertRaisesRegex(UsageError, f"'{flag}' isn't a valid command line flag."):
                parse_command_line([flag])

    def test_units_and_options_interleaved(self):
        params = parse_command_line(["C", "--name", "Kitchen", "F"])
        self.assertIs(params.units, TemperatureUnits.FAHRENHEIT)
        self.assertEqual(params.config.device_name, "Kitchen")

        params = parse_command_line(["-v", "F", "--timeout", "3", "c"])
        self.assertIs(params.units, TemperatureUnits.CELSIUS)
        self.assertEqual(params.config.connect_timeout, 3.0)
        self.assertTrue(params.verbose)

    def test_options_become_config(self):
        params = parse_command_line(["--name", "Kitchen", "--scan-timeout", "3", "--timeout", "7.5", "-v", "f"])
        self.assertEqual(params.config, SessionConfig(device_name="Kitchen", scan_timeout=3.0, connect_timeout=7.5))
        self.assertTrue(params.verbose)
        self.assertIs(params.units, TemperatureUnits.FAHRENHEIT)


class Main(unittest.TestCase):
    def run_main(self, argv):
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = main(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def test_invalid_flag_prints_usage(self):
        with mock.patch.object(lywsd02_client, "init_and_run") as init_and_run:
            code, stdout, stderr = self.run_main(["kelvin"])

        self.assertEqual(code, 1)
        self.assertIn("error: 'kelvin' isn't a valid command line flag.", stderr)
        self.assertIn("usage: LYWSD02", stdout)
        init_and_run.assert_not_called()

    def test_misspelled_celsius_exits_with_usage(self):
        with mock.patch.object(lywsd02_client, "init_and_run") as init_and_run:
            code, stdout, stderr = self.run_main(["Celsius"])

        self.assertEqual(code, 1)
        self.assertIn("error: 'Celsius' isn't a valid command line flag.", stderr)
        init_and_run.assert_not_called()

    def test_usage_lists_every_option(self):
        with mock.patch.object(lywsd02_client, "init_and_run"):
            _, stdout, _ = self.run_main(["kelvin"])

        usage = stdout.splitlines()[0]
        for option in ("--name NAME", "--scan-timeout S", "--timeout S", "-v", "Celcius | C | Fahrenheit | F"):
            self.assertIn(option, usage)
        for option in ("--name", "--scan-timeout", "--timeout", "--verbose"):
            self.assertIn(option, stdout)

    def test_unknown_option(self):
        with mock.patch.object(lywsd02_client, "init_and_run"):
            code, _, _ = self.run_main(["--bogus"])
        self.assertEqual(code, 1)

    def test_runs_worker_with_parsed_config(self):
        with mock.patch.object(lywsd02_client, "init_and_run") as init_and_run, \
                mock.patch.object(lywsd02_client, "configure_logging"):
            code, _, _ = self.run_main(["--name", "Kitchen", "C"])

        self.assertEqual(code, 0)
        worker, config = init_and_run.call_args[0]
        self.assertEqual(config.device_name, "Kitchen")

        session = ScriptedSession()
        with redirect_stdout(io.StringIO()):
            worker(session)
        self.assertEqual(session.device_name, "Kitchen")
        self.assertEqual(session.calls, ["connect", "set_current_time", "set_celsius", "disconnect"])

    def test_ble_failures_do_not_change_exit_code(self):
        def failing_run(worker, config):
            with redirect_stdout(io.StringIO()):
                worker(ScriptedSession(connect=BLEError.CONNECT))

        with mock.patch.object(lywsd02_client, "init_and_run", side_effect=failing_run), \
                mock.patch.object(lywsd02_client, "configure_logging"):
            code, _, _ = self.run_main(["F"])

        self.assertEqual(code, 0)


class WorkerSequence(unittest.TestCase):
    def run_worker(self, session, units=None):
        stdout = io.StringIO()
        with redirect_stdout(stdout), self.assertLogs("lywsd02", level="INFO") as logs:
            lywsd02_client.logger.info("worker start")
            worker_main(session, CommandLineParams(units=units))
        return stdout.getvalue(), "\n".join(logs.output)

    def test_time_only(self):
        session = ScriptedSession()
        stdout, _ = self.run_worker(session)
        self.assertEqual(session.calls, ["connect", "set_current_time", "disconnect"])
        self.assertIn("LYWSD02 device connected!", stdout)
        self.assertIn("Disconnecting...", stdout)

    def test_fahrenheit(self):
        session = ScriptedSession()
        stdout, _ = self.run_worker(session, TemperatureUnits.FAHRENHEIT)
        self.assertEqual(session.calls, ["connect", "set_current_time", "set_fahrenheit", "disconnect"])
        self.assertIn("Setting temperature units to Fahrenheit...", stdout)

    def test_connect_failure_still_disconnects_once(self):
        session = ScriptedSession(connect=BLEError.CONNECT)
        _, logs = self.run_worker(session, TemperatureUnits.CELSIUS)
        self.assertEqual(session.calls, ["connect", "disconnect"])
        self.assertIn("Failed to connect to LYWSD02 device.", logs)

    def test_time_failure_does_not_skip_units(self):
        session = ScriptedSession(set_current_time=BLEError.TIMEOUT)
        _, logs = self.run_worker(session, TemperatureUnits.CELSIUS)
        self.assertEqual(session.calls, ["connect", "set_current_time", "set_celsius", "disconnect"])
        self.assertIn("BLE transmit returned error: 6 (TIMEOUT)", logs)

    def test_connection_loss_is_reported(self):
        session = ScriptedSession(set_current_time=BLEError.NOT_CONNECTED, set_celsius=BLEError.NOT_CONNECTED)
        stdout, _ = self.run_worker(session, TemperatureUnits.CELSIUS)
        self.assertEqual(stdout.count("BLE connection lost!"), 2)
        self.assertEqual(session.calls[-1], "disconnect")


if __name__ == "__main__":
    unittest.main()
