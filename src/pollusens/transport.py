"""
Byte source/sink adapters used by a sensor session.

The session only relies on :class:`Transport`: ``read`` blocks until at least
one byte is available and returns ``b""`` once the stream has ended or the
transport was closed.
"""

from __future__ import annotations

import abc
import logging
import threading
from typing import Any, BinaryIO, Dict, Optional

import serial

from .descriptors import DescriptorError, PortSettings

_PARITY = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}
_STOP_BITS = {
    1.0: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2.0: serial.STOPBITS_TWO,
}


class Transport(abc.ABC):
    @abc.abstractmethod
    def read(self, size: int) -> bytes:
        """Return the next chunk (at most *size* bytes), or ``b""`` at end of stream."""

    @abc.abstractmethod
    def write(self, data: bytes) -> None:
        ...

    def cancel_read(self) -> None:
        """Interrupt a blocked :meth:`read` if the backend supports it."""

    @abc.abstractmethod
    def close(self) -> None:
        ...


def serial_kwargs(settings: PortSettings) -> Dict[str, Any]:
    if settings.parity not in _PARITY:
        raise DescriptorError(f"Unsupported parity '{settings.parity}'")
    if float(settings.stop_bits) not in _STOP_BITS:
        raise DescriptorError(f"Unsupported stop bits {settings.stop_bits}")
    if settings.data_bits not in (5, 6, 7, 8):
        raise DescriptorError(f"Unsupported data bits {settings.data_bits}")
    return {
        "baudrate": settings.baud_rate,
        "bytesize": settings.data_bits,
        "parity": _PARITY[settings.parity],
        "stopbits": _STOP_BITS[float(settings.stop_bits)],
        "rtscts": settings.flow_control == "hardware",
    }


class SerialTransport(Transport):
    """
    pyserial-backed transport. Reads poll with a short timeout so that
    :meth:`close` from another thread ends a blocked read promptly.
    """

    def __init__(self, handle: Any):
        self._serial = handle
        self._closed = threading.Event()
        self._write_lock = threading.Lock()
        self._log = logging.getLogger(__name__)

    @classmethod
    def open(cls, device: str, settings: PortSettings, poll_interval: float = 0.1) -> "SerialTransport":
        handle = serial.Serial(port=device, timeout=poll_interval, **serial_kwargs(settings))
        return cls(handle)

    def read(self, size: int) -> bytes:
        while not self._closed.is_set():
            waiting = self._serial.in_waiting
            data = self._serial.read(max(1, min(waiting, size)))
            if data:
                return data
        return b""

    def write(self, data: bytes) -> None:
        if self._closed.is_set():
            raise serial.SerialException("port is closed")
        with self._write_lock:
            self._serial.write(data)
            self._serial.flush()

    def cancel_read(self) -> None:
        self._closed.set()
        cancel = getattr(self._serial, "cancel_read", None)
        if cancel is not None:
            try:
                cancel()
            except Exception:
                self._log.debug("cancel_read not supported by port", exc_info=True)

    def close(self) -> None:
        self._closed.set()
        self._serial.close()


class StreamTransport(Transport):
    """Transport over binary file objects (stdin, files, pipes)."""

    def __init__(self, reader: BinaryIO, writer: Optional[BinaryIO] = None):
        self._reader = reader
        self._writer = writer
        self._closed = False

    def read(self, size: int) -> bytes:
        if self._closed:
            return b""
        read1 = getattr(self._reader, "read1", None)
        if read1 is not None:
            return read1(size)
        return self._reader.read(size)

    def write(self, data: bytes) -> None:
        if self._writer is None:
            raise OSError("transport is read-only")
        self._writer.write(data)
        self._writer.flush()

    def cancel_read(self) -> None:
        self._closed = True

    def close(self) -> None:
        self._closed = True
