from __future__ import annotations

import enum
import logging
import threading
from collections import deque
from concurrent.futures import Future
from typing import Any, Callable, Deque, Dict, Optional, Sequence

from .commands import CommandScheduler, parse_command
from .config import SessionRuntime
from .descriptors import PortSettings, SensorDescriptor, resolve_by_name
from .expression import Number
from .frames import FrameParser, Reading
from .transport import Transport

logger = logging.getLogger(__name__)

ReadingCallback = Callable[[Dict[str, Number]], None]
RawFrameCallback = Callable[[bytes], None]
ErrorCallback = Callable[[str], None]
TransportOpener = Callable[[PortSettings], Transport]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RUNNING = "running"
    DISCONNECTING = "disconnecting"
    CLOSED = "closed"


class SessionLoop(threading.Thread):
    """
    Pulls chunks from the transport and feeds the frame parser. Each reading
    satisfies the oldest pending one-shot request, then goes to the reading
    callback. Ends on end of stream, on stop, or on the first unexpected fault.
    """

    def __init__(
        self,
        transport: Transport,
        parser: FrameParser,
        on_reading: Optional[ReadingCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        chunk_size: int = 256,
    ) -> None:
        super().__init__(daemon=True, name=f"session-{parser.descriptor.name}")
        self.transport = transport
        self.parser = parser
        self.on_reading = on_reading
        self.on_error = on_error
        self.chunk_size = max(int(chunk_size), 1)
        self.readings = 0
        self.last_exception: Optional[Exception] = None
        self._stop_event = threading.Event()
        self._requests: Deque["Future[Dict[str, Number]]"] = deque()
        self._requests_lock = threading.Lock()
        self._finished = False
        self._log = logging.getLogger(__name__)

    def run(self) -> None:
        try:
            while not self._stop_event.is_set():
                chunk = self.transport.read(self.chunk_size)
                if not chunk:
                    if not self._stop_event.is_set():
                        self._log.info("End of stream from %s", self.parser.descriptor.name)
                    break
                for reading in self.parser.feed(chunk):
                    # frames left in the chunk are dropped once a stop is requested
                    if self._stop_event.is_set():
                        break
                    self._deliver(reading)
        except Exception as exc:
            if self._stop_event.is_set():
                self._log.debug("Read interrupted by disconnect: %s", exc)
            else:
                self.last_exception = exc
                self._log.exception("Unexpected error in session loop")
                if self.on_error is not None:
                    self.on_error(f"Read loop error: {exc}")
        finally:
            self._abandon_requests()

    def stop(self) -> None:
        self._stop_event.set()

    def request_reading(self) -> "Future[Dict[str, Number]]":
        future: "Future[Dict[str, Number]]" = Future()
        with self._requests_lock:
            if self._finished:
                raise RuntimeError("Session loop has ended")
            self._requests.append(future)
        return future

    def pending_requests(self) -> int:
        with self._requests_lock:
            return len(self._requests)

    def _deliver(self, reading: Reading) -> None:
        if self._stop_event.is_set():
            return
        self.readings += 1
        while True:
            with self._requests_lock:
                if not self._requests:
                    break
                future = self._requests.popleft()
            # cancelled requests are skipped, the reading goes to the next one
            if future.set_running_or_notify_cancel():
                future.set_result(reading.values)
                break
        if self.on_reading is not None:
            self.on_reading(reading.values)

    def _abandon_requests(self) -> None:
        with self._requests_lock:
            self._finished = True
            pending = list(self._requests)
            self._requests.clear()
        for future in pending:
            future.cancel()


class SensorSession:
    """
    Explicit handle for one connected sensor.

    Owns the transport, the frame parser (and its decode buffer), the session
    loop thread with its one-shot request queue, and the command scheduler.
    """

    def __init__(
        self,
        descriptor: SensorDescriptor,
        opener: TransportOpener,
        runtime: Optional[SessionRuntime] = None,
    ) -> None:
        self.descriptor = descriptor
        self.runtime = runtime or SessionRuntime()
        self.on_reading: Optional[ReadingCallback] = None
        self.on_raw_frame: Optional[RawFrameCallback] = None
        self.on_error: Optional[ErrorCallback] = None
        self._opener = opener
        self._state = SessionState.IDLE
        self._state_lock = threading.Lock()
        self._transport: Optional[Transport] = None
        self._parser: Optional[FrameParser] = None
        self._loop: Optional[SessionLoop] = None
        self._scheduler: Optional[CommandScheduler] = None
        self._log = logging.getLogger(__name__)

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(
        self,
        on_reading: Optional[ReadingCallback] = None,
        on_raw_frame: Optional[RawFrameCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if on_reading is not None:
            self.on_reading = on_reading
        if on_raw_frame is not None:
            self.on_raw_frame = on_raw_frame
        if on_error is not None:
            self.on_error = on_error

    def connect(self) -> "SensorSession":
        with self._state_lock:
            if self._state is not SessionState.IDLE:
                raise RuntimeError(f"Cannot connect a session in state '{self._state.value}'")
            self._state = SessionState.CONNECTING
        try:
            parse_command(self.descriptor.command)
            self._parser = FrameParser(
                self.descriptor, on_error=self._report, on_raw_frame=self._emit_raw
            )
            self._transport = self._opener(self.descriptor.port_settings())
            self._loop = SessionLoop(
                self._transport,
                self._parser,
                on_reading=self._emit_reading,
                on_error=self._report,
                chunk_size=self.runtime.read_chunk_size,
            )
            self._loop.start()
            self._scheduler = CommandScheduler(on_error=self._report)
            self._scheduler.start(self.descriptor, self._transport.write)
        except Exception:
            self._log.warning("Failed to connect to %s", self.descriptor.name)
            self.disconnect()
            raise
        with self._state_lock:
            self._state = SessionState.RUNNING
        self._log.info("Connected to %s", self.descriptor.name)
        return self

    def next_reading(self) -> "Future[Dict[str, Number]]":
        """Future resolved with the next reading that passes validation."""
        if self._state is not SessionState.RUNNING or self._loop is None:
            raise RuntimeError("Session is not running")
        return self._loop.request_reading()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the session loop to end; True when it has."""
        if self._loop is None:
            return True
        self._loop.join(timeout)
        return not self._loop.is_alive()

    def disconnect(self) -> None:
        with self._state_lock:
            if self._state in (SessionState.CLOSED, SessionState.DISCONNECTING):
                return
            self._state = SessionState.DISCONNECTING
        if self._scheduler is not None:
            self._scheduler.stop()
        if self._loop is not None:
            self._loop.stop()
        if self._transport is not None:
            try:
                self._transport.cancel_read()
            except Exception:
                self._log.debug("Failed to cancel pending read", exc_info=True)
            try:
                self._transport.close()
            except Exception:
                self._log.debug("Failed to close transport", exc_info=True)
        if self._loop is not None and self._loop.is_alive() and self._loop is not threading.current_thread():
            self._loop.join(self.runtime.join_timeout_sec)
            if self._loop.is_alive():
                self._log.warning("Session loop for %s did not stop in time", self.descriptor.name)
        if self._parser is not None:
            self._parser.reset()
        self._transport = None
        with self._state_lock:
            self._state = SessionState.CLOSED
        self._log.info("Disconnected from %s", self.descriptor.name)

    def stats(self) -> Dict[str, int]:
        stats: Dict[str, int] = dict(self._parser.stats()) if self._parser else {}
        stats["readings"] = self._loop.readings if self._loop else 0
        stats["command_writes"] = self._scheduler.writes if self._scheduler else 0
        stats["command_failures"] = self._scheduler.failures if self._scheduler else 0
        return stats

    def __enter__(self) -> "SensorSession":
        return self.connect()

    def __exit__(self, *exc_info: Any) -> None:
        self.disconnect()

    def _report(self, message: str) -> None:
        if self.on_error is not None:
            self.on_error(message)
        else:
            self._log.warning("%s: %s", self.descriptor.name, message)

    def _emit_raw(self, window: bytes) -> None:
        if self.on_raw_frame is not None:
            self.on_raw_frame(window)
        else:
            self._log.debug("%s frame: %s", self.descriptor.name, window.hex(" "))

    def _emit_reading(self, values: Dict[str, Number]) -> None:
        if self.on_reading is not None:
            self.on_reading(values)
        else:
            self._log.debug("%s reading: %s", self.descriptor.name, _format_values(values))


def _format_values(values: Dict[str, Number]) -> str:
    return " ".join(f"{key}={value}" for key, value in values.items())


def connect_by_name(
    entries: Sequence[Any],
    name: str,
    opener: TransportOpener,
    runtime: Optional[SessionRuntime] = None,
) -> SensorSession:
    descriptor = resolve_by_name(entries, name)
    return SensorSession(descriptor, opener, runtime).connect()
