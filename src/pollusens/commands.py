from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from .descriptors import NONE_SENTINEL, DescriptorError, SensorDescriptor

logger = logging.getLogger(__name__)


def parse_command(command: Optional[str]) -> Optional[bytes]:
    """
    Convert a command such as ``"01 03 00 00 00 02"`` into its byte payload.
    Returns None when the descriptor disables transmission.
    """
    if command is None:
        return None
    text = str(command).strip()
    if not text or text.lower() == NONE_SENTINEL:
        return None
    payload = bytearray()
    for token in text.split():
        try:
            value = int(token, 16)
        except ValueError as exc:
            raise DescriptorError(f"Invalid command token '{token}' in '{text}'") from exc
        if not 0 <= value <= 0xFF:
            raise DescriptorError(f"Command token '{token}' is not a single byte")
        payload.append(value)
    return bytes(payload)


def command_period(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


class CommandScheduler:
    """
    Sends a sensor's command once on start and, when ``send_cmd_period`` is a
    positive number, again every period from a background thread until
    :meth:`stop`. Write failures are reported and the timer keeps running.
    """

    def __init__(self, on_error: Optional[Callable[[str], None]] = None):
        self.on_error = on_error
        self.writes = 0
        self.failures = 0
        self._payload: Optional[bytes] = None
        self._sink: Optional[Callable[[bytes], Any]] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started = False

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, descriptor: SensorDescriptor, sink: Callable[[bytes], Any]) -> None:
        if self._started:
            raise RuntimeError("Command scheduler already started")
        self._started = True
        payload = parse_command(descriptor.command)
        if payload is None:
            logger.debug("No command configured for %s", descriptor.name)
            return
        self._payload = payload
        self._sink = sink
        self._send()
        period = command_period(descriptor.send_cmd_period)
        if period is None or self._stop_event.is_set():
            return
        logger.info("Resending command to %s every %.3gs", descriptor.name, period)
        self._thread = threading.Thread(
            target=self._run, args=(period,), name=f"command-{descriptor.name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None

    def _run(self, period: float) -> None:
        while not self._stop_event.wait(period):
            self._send()

    def _send(self) -> None:
        assert self._sink is not None and self._payload is not None
        try:
            self._sink(self._payload)
        except Exception as exc:
            self.failures += 1
            message = f"Error sending command: {exc}"
            logger.warning(message)
            if self.on_error is not None:
                try:
                    self.on_error(message)
                except Exception:
                    logger.exception("Error callback failed")
            return
        self.writes += 1
