"""
LYWSD02 Session Manager
Owns one BLE connection to a LYWSD02 and serializes request/response exchanges over it
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from lywsd02_protocol import (
    BLEError,
    Command,
    ConnectionState,
    DEFAULT_DEVICE_NAME,
    MIBEACON_SERVICE_UUID,
    SERVICE_UUID,
    STATE_TRANSITIONS,
    TemperatureUnits,
    set_current_time_command,
    set_units_command,
)

logger = logging.getLogger(__name__)

# Exceptions bleak and the OS Bluetooth stack raise from GATT operations
TRANSPORT_ERRORS = (BleakError, OSError, EOFError)


@dataclass(frozen=True)
class SessionConfig:
    """Timeouts (seconds) and scan filter for a session"""
    device_name: Optional[str] = None
    scan_timeout: float = 10.0
    connect_timeout: float = 20.0
    write_timeout: float = 5.0
    response_timeout: float = 5.0
    disconnect_timeout: float = 5.0


@dataclass
class PendingRequest:
    command: Command
    deadline: float
    result: "asyncio.Future[BLEError]"
    response: Optional[bytes] = field(default=None, repr=False)

    def resolve(self, code: BLEError) -> bool:
        """Complete the request once, later resolutions are ignored"""
        if self.result.done():
            return False
        self.result.set_result(code)
        return True


class LYWSD02Session:
    """
    BLE session with a single LYWSD02 peripheral

    Features:
    - Scan by advertised name or by the LYWSD02 service
    - Connection state machine with link loss detection
    - One outstanding request at a time, each with a deadline
    - Every operation returns a BLEError code instead of raising

    All methods and bleak callbacks run on the same event loop, which is what
    keeps the connection state and the pending request consistent.

    Usage:
        session = LYWSD02Session(SessionConfig())
        await session.connect()
        await session.set_current_time()
        await session.disconnect()
    """

    def __init__(self, config: Optional[SessionConfig] = None, scanner: Any = BleakScanner, client_class: Any = BleakClient):
        """
        Initialize the session (no radio activity until connect)

        Args:
            config: Timeouts and default device name
            scanner: Object providing find_device_by_filter(), BleakScanner by default
            client_class: BleakClient compatible class used for the connection
        """
        self.config = config or SessionConfig()
        self._scanner = scanner
        self._client_class = client_class

        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[Any] = None
        self._device: Optional[BLEDevice] = None
        self._pending: Optional[PendingRequest] = None
        self._last_response: Optional[bytes] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def pending(self) -> Optional[PendingRequest]:
        return self._pending

    @property
    def device(self) -> Optional[BLEDevice]:
        return self._device

    @property
    def last_response(self) -> Optional[bytes]:
        """Bytes of the last validated response"""
        return self._last_response

    # Connection management

    async def connect(self, device_name: Optional[str] = None) -> BLEError:
        """
        Scan for the device and connect to the first match

        Args:
            device_name: Exact advertised name to accept, falls back to config.device_name.
                         Without a name, any peripheral advertising the LYWSD02 service matches

        Returns:
            BLEError.NONE when connected, BLEError.CONNECT otherwise
        """
        if self._state is not ConnectionState.DISCONNECTED:
            logger.error(f"[ERROR] connect() called while {self._state.value}")
            return BLEError.PARAM

        name = device_name if device_name is not None else self.config.device_name
        self._transition(ConnectionState.CONNECTING)

        try:
            device = await self._scan(name)
            if device is None:
                logger.error(f"[SCAN] No {'device named ' + repr(name) if name else 'LYWSD02 device'} found")
                self._release()
                return BLEError.CONNECT

            logger.info(f"[BLE] Connecting to {device.name} ({device.address})...")
            client = self._client_class(
                device,
                disconnected_callback=self._on_disconnected,
                timeout=self.config.connect_timeout,
            )
            self._client = client
            self._device = device
            await asyncio.wait_for(client.connect(), timeout=self.config.connect_timeout)

        except asyncio.TimeoutError:
            logger.error(f"[ERROR] Connection timed out after {self.config.connect_timeout}s")
            await self._abort_connect()
            return BLEError.CONNECT
        except TRANSPORT_ERRORS as e:
            logger.error(f"[ERROR] Connection failed: {e}")
            await self._abort_connect()
            return BLEError.CONNECT
        except asyncio.CancelledError:
            logger.error("[ERROR] Connection attempt cancelled")
            await self._abort_connect()
            raise

        # Link may have dropped while connect() was finishing
        if self._state is not ConnectionState.CONNECTING or self._client is not client:
            logger.error("[ERROR] Link lost while connecting")
            await self._abort_connect()
            return BLEError.CONNECT

        self._transition(ConnectionState.CONNECTED)
        logger.info("[BLE] Connected successfully")
        return BLEError.NONE

    async def disconnect(self) -> BLEError:
        """
        Tear down the link and release the peripheral

        Returns:
            BLEError.NONE on confirmed disconnect (or if already disconnected),
            BLEError.TIMEOUT if not confirmed within disconnect_timeout
        """
        if self._state is ConnectionState.DISCONNECTED:
            return BLEError.NONE
        if self._state is not ConnectionState.CONNECTED:
            logger.error(f"[ERROR] disconnect() called while {self._state.value}")
            return BLEError.PARAM

        client = self._client
        self._transition(ConnectionState.DISCONNECTING)
        self._fail_pending(BLEError.NOT_CONNECTED)

        result = BLEError.NONE
        try:
            # bleak returns from disconnect() once the link is down
            await asyncio.wait_for(client.disconnect(), timeout=self.config.disconnect_timeout)
            logger.info("[BLE] Disconnected")
        except asyncio.TimeoutError:
            logger.error(f"[ERROR] Disconnect not confirmed after {self.config.disconnect_timeout}s")
            result = BLEError.TIMEOUT
        except TRANSPORT_ERRORS as e:
            logger.error(f"[ERROR] Disconnect failed: {e}")
            result = BLEError.CONNECT
        finally:
            self._release()

        return result

    # Requests

    async def send_command(self, command: Command) -> BLEError:
        """
        Write a command and, if it expects one, wait for its response

        Args:
            command: Command to send

        Returns:
            BLEError.NONE on success, NOT_CONNECTED, PARAM (request already pending),
            TIMEOUT, WRITE_FAILED or BAD_RESPONSE otherwise
        """
        if self._state is not ConnectionState.CONNECTED:
            logger.error(f"[ERROR] Cannot send {command.name}: not connected")
            return BLEError.NOT_CONNECTED
        if self._pending is not None:
            logger.error(f"[ERROR] Cannot send {command.name}: {self._pending.command.name} still pending")
            return BLEError.PARAM

        client = self._client
        pending = None
        notifying = False
        read_task: Optional[asyncio.Task] = None

        if command.expects_response:
            loop = asyncio.get_running_loop()
            pending = PendingRequest(
                command=command,
                deadline=loop.time() + self.config.response_timeout,
                result=loop.create_future(),
            )
            self._pending = pending

        try:
            if pending is not None and not command.read_response:
                await asyncio.wait_for(
                    client.start_notify(command.response_uuid, self._notification_handler),
                    timeout=self.config.write_timeout,
                )
                notifying = True

            logger.debug(f"[TX] {command.name}: {command.payload.hex(' ')} -> {command.char_uuid}")
            await asyncio.wait_for(
                client.write_gatt_char(command.char_uuid, command.payload, response=True),
                timeout=self.config.write_timeout,
            )

            if pending is None:
                logger.info(f"[TX] {command.name} acknowledged")
                return BLEError.NONE

            if command.read_response:
                read_task = asyncio.create_task(self._read_response(client, pending))

            remaining = max(0.0, pending.deadline - asyncio.get_running_loop().time())
            result = await asyncio.wait_for(asyncio.shield(pending.result), timeout=remaining)
            if result is BLEError.NONE:
                self._last_response = pending.response
                logger.info(f"[RX] {command.name} confirmed by device")
            return result

        except asyncio.TimeoutError:
            if pending is not None and pending.result.done():
                # Resolved in the same loop iteration the deadline fired
                return pending.result.result()
            if self._state is not ConnectionState.CONNECTED:
                logger.error(f"[ERROR] {command.name}: connection lost")
                return BLEError.NOT_CONNECTED
            logger.error(f"[TIMEOUT] {command.name}: no response within {self.config.response_timeout}s")
            return BLEError.TIMEOUT
        except TRANSPORT_ERRORS as e:
            if self._state is not ConnectionState.CONNECTED:
                logger.error(f"[ERROR] {command.name}: connection lost during write")
                return BLEError.NOT_CONNECTED
            logger.error(f"[ERROR] {command.name}: write failed: {e}")
            return BLEError.WRITE_FAILED
        finally:
            if pending is not None:
                pending.resolve(BLEError.TIMEOUT)
                if self._pending is pending:
                    self._pending = None
            if read_task is not None and not read_task.done():
                read_task.cancel()
            if notifying and self._client is client and self._state is ConnectionState.CONNECTED:
                await self._stop_notify(client, command.response_uuid)

    async def set_current_time(self, now: Optional[datetime] = None) -> BLEError:
        return await self.send_command(set_current_time_command(now))

    async def set_units(self, units: TemperatureUnits) -> BLEError:
        return await self.send_command(set_units_command(units))

    async def set_celsius(self) -> BLEError:
        return await self.set_units(TemperatureUnits.CELSIUS)

    async def set_fahrenheit(self) -> BLEError:
        return await self.set_units(TemperatureUnits.FAHRENHEIT)

    # Radio events

    def handle_response(self, char_uuid: str, data: bytes) -> None:
        """
        Correlate a read result or notification with the pending request

        Responses with no request outstanding (including late ones arriving
        after a timeout) are ignored.
        """
        pending = self._pending
        if pending is None or pending.result.done():
            logger.debug(f"[RX] Ignoring unsolicited data from {char_uuid}: {bytes(data).hex(' ')}")
            return

        command = pending.command
        if char_uuid.lower() != command.response_uuid.lower():
            logger.error(f"[RX] {command.name}: response from {char_uuid}, expected {command.response_uuid}")
            pending.resolve(BLEError.BAD_RESPONSE)
            return

        data = bytes(data)
        logger.debug(f"[RX] {command.name}: {data.hex(' ')}")
        if not command.accepts(data):
            logger.error(f"[RX] {command.name}: invalid response {data.hex(' ')}")
            pending.resolve(BLEError.BAD_RESPONSE)
            return

        pending.response = data
        pending.resolve(BLEError.NONE)

    def _notification_handler(self, sender: BleakGATTCharacteristic, data: bytearray) -> None:
        self.handle_response(str(sender.uuid), data)

    def _on_disconnected(self, client: Any) -> None:
        """bleak disconnected_callback: link loss or end of a requested teardown"""
        if client is not self._client:
            logger.debug("[BLE] Ignoring disconnect of a stale client")
            return

        if self._state is ConnectionState.CONNECTED:
            logger.warning("[BLE] Connection lost")
        self._fail_pending(BLEError.NOT_CONNECTED)

        if self._state is ConnectionState.DISCONNECTING:
            # disconnect() finishes the transition and releases the handle
            return

        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        self._client = None
        self._device = None

    # Internal helpers

    def _transition(self, new_state: ConnectionState) -> bool:
        if new_state not in STATE_TRANSITIONS[self._state]:
            logger.error(f"[STATE] Illegal transition {self._state.value} -> {new_state.value}")
            return False
        logger.debug(f"[STATE] {self._state.value} -> {new_state.value}")
        self._state = new_state
        return True

    async def _scan(self, name: Optional[str]) -> Optional[BLEDevice]:
        logger.info(f"[SCAN] Scanning for {repr(name) if name else 'LYWSD02 devices'}...")

        def matches(device: BLEDevice, adv: AdvertisementData) -> bool:
            advertised_name = adv.local_name or device.name
            if name:
                return advertised_name == name
            if SERVICE_UUID in (uuid.lower() for uuid in adv.service_uuids):
                return True
            return MIBEACON_SERVICE_UUID in adv.service_data and advertised_name == DEFAULT_DEVICE_NAME

        device = await self._scanner.find_device_by_filter(matches, timeout=self.config.scan_timeout)
        if device is not None:
            logger.info(f"[SCAN] Found: {device.name} ({device.address})")
        return device

    async def _read_response(self, client: Any, pending: PendingRequest) -> None:
        uuid = pending.command.response_uuid
        try:
            data = await client.read_gatt_char(uuid)
        except TRANSPORT_ERRORS as e:
            if self._pending is pending:
                logger.error(f"[ERROR] {pending.command.name}: read of {uuid} failed: {e}")
                pending.resolve(BLEError.NOT_CONNECTED if self._state is not ConnectionState.CONNECTED else BLEError.BAD_RESPONSE)
            return
        if self._pending is pending:
            self.handle_response(uuid, data)

    async def _stop_notify(self, client: Any, uuid: str) -> None:
        try:
            await asyncio.wait_for(client.stop_notify(uuid), timeout=self.config.write_timeout)
        except (asyncio.TimeoutError, *TRANSPORT_ERRORS) as e:
            logger.warning(f"[BLE] Failed to stop notifications on {uuid}: {e}")

    async def _abort_connect(self) -> None:
        client = self._client
        self._release()
        if client is None:
            return
        try:
            await asyncio.wait_for(client.disconnect(), timeout=self.config.disconnect_timeout)
        except (asyncio.TimeoutError, *TRANSPORT_ERRORS) as e:
            logger.debug(f"[BLE] Cleanup after failed connect: {e}")

    def _fail_pending(self, code: BLEError) -> None:
        pending = self._pending
        if pending is not None:
            pending.resolve(code)
            self._pending = None

    def _release(self) -> None:
        """Drop the peripheral handle and end in DISCONNECTED"""
        self._fail_pending(BLEError.NOT_CONNECTED)
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        self._client = None
        self._device = None
