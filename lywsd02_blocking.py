"""
Blocking LYWSD02 API
Runs the session on an asyncio event loop and exposes it to a worker thread as plain blocking calls
"""

import asyncio
import concurrent.futures
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Coroutine, Iterator, Optional

from lywsd02_protocol import BLEError, Command, ConnectionState
from lywsd02_session import LYWSD02Session, SessionConfig

logger = logging.getLogger(__name__)

# Extra time granted on top of an operation's own timeouts before the worker gives up on it
BLOCKING_MARGIN = 2.0
WORKER_JOIN_TIMEOUT = 5.0


class BlockingSession:
    """
    Thread-safe blocking facade over LYWSD02Session

    Every call is scheduled on the event loop that owns the session and blocks
    the calling thread, never the loop, until the result is available or a hard
    upper bound elapses.

    Usage (from a worker thread):
        with blocking.connection() as result:
            if result == BLEError.NONE:
                blocking.set_current_time()
    """

    def __init__(self, session: LYWSD02Session, loop: asyncio.AbstractEventLoop,
                 loop_thread: Optional[threading.Thread] = None):
        self.session = session
        self._loop = loop
        self._loop_thread = loop_thread

    @property
    def config(self) -> SessionConfig:
        return self.session.config

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    def connect(self, device_name: Optional[str] = None) -> BLEError:
        bound = self.config.scan_timeout + self.config.connect_timeout + self.config.disconnect_timeout
        return self._call(self.session.connect(device_name), bound, BLEError.CONNECT)

    def disconnect(self) -> BLEError:
        return self._call(self.session.disconnect(), self.config.disconnect_timeout, BLEError.TIMEOUT)

    def send_command(self, command: Command) -> BLEError:
        return self._call(self.session.send_command(command), self._request_bound(), BLEError.TIMEOUT)

    def set_current_time(self, now: Optional[datetime] = None) -> BLEError:
        return self._call(self.session.set_current_time(now), self._request_bound(), BLEError.TIMEOUT)

    def set_celsius(self) -> BLEError:
        return self._call(self.session.set_celsius(), self._request_bound(), BLEError.TIMEOUT)

    def set_fahrenheit(self) -> BLEError:
        return self._call(self.session.set_fahrenheit(), self._request_bound(), BLEError.TIMEOUT)

    @contextmanager
    def connection(self, device_name: Optional[str] = None) -> Iterator[BLEError]:
        """
        Connect for the duration of a with-block

        Yields the connect result. disconnect() runs exactly once on exit,
        whether the block finished, failed to connect, or raised.
        """
        try:
            yield self.connect(device_name)
        finally:
            self.disconnect()

    def _request_bound(self) -> float:
        config = self.config
        return 3 * config.write_timeout + config.response_timeout

    @staticmethod
    async def _bounded(coro: Coroutine, bound: float, timeout_code: BLEError) -> BLEError:
        # wait_for returns only after the cancelled operation has cleaned up
        try:
            return await asyncio.wait_for(coro, timeout=bound)
        except asyncio.TimeoutError:
            logger.error(f"[TIMEOUT] Operation did not complete within {bound:.1f}s, cancelled")
            return timeout_code

    def _call(self, coro: Coroutine, bound: float, timeout_code: BLEError) -> BLEError:
        # Blocking the loop thread on its own future would deadlock
        if threading.current_thread() is self._loop_thread:
            coro.close()
            raise RuntimeError("BlockingSession must not be used from the event loop thread")

        future = asyncio.run_coroutine_threadsafe(self._bounded(coro, bound, timeout_code), self._loop)
        try:
            return future.result(timeout=bound + BLOCKING_MARGIN)
        except concurrent.futures.TimeoutError:
            logger.error(f"[TIMEOUT] Operation did not complete within {bound + BLOCKING_MARGIN:.1f}s, cancelling")
            future.cancel()
            return timeout_code
        except concurrent.futures.CancelledError:
            logger.error("[ERROR] Operation cancelled")
            return timeout_code


def init_and_run(worker: Callable[[BlockingSession], None], config: Optional[SessionConfig] = None,
                 session: Optional[LYWSD02Session] = None) -> None:
    """
    Run the radio event loop on this thread and worker(blocking_session) on a separate thread

    Returns once the worker has finished. Call it from the main thread: some
    platform Bluetooth stacks only deliver events to the main thread's loop.

    Args:
        worker: Developer code issuing blocking calls
        config: Session configuration
        session: Pre-built session, mainly for tests
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    if session is None:
        session = LYWSD02Session(config)
    blocking = BlockingSession(session, loop, threading.current_thread())
    errors = []

    def worker_main() -> None:
        try:
            worker(blocking)
        except Exception as e:
            logger.exception(f"[ERROR] Worker failed: {e}")
            errors.append(e)
        finally:
            loop.call_soon_threadsafe(loop.stop)

    thread = threading.Thread(target=worker_main, name="lywsd02-worker", daemon=True)
    thread.start()
    try:
        loop.run_forever()
    finally:
        thread.join(timeout=WORKER_JOIN_TIMEOUT)
        try:
            if session.state is ConnectionState.CONNECTED:
                loop.run_until_complete(session.disconnect())
            _cancel_remaining_tasks(loop)
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            asyncio.set_event_loop(None)
            loop.close()

    if errors:
        raise errors[0]


def _cancel_remaining_tasks(loop: asyncio.AbstractEventLoop) -> None:
    tasks = asyncio.all_tasks(loop)
    if not tasks:
        return
    for task in tasks:
        task.cancel()
    loop.run_until_complete(asyncio.gather(*tasks, return_exceptions=True))
