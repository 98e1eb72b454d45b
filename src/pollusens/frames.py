from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from .descriptors import ChecksumSpec, FieldSpec, FrameSpec, SensorDescriptor
from .expression import FormulaError, Number, evaluate


@dataclass
class Reading:
    values: Dict[str, Number]
    raw: bytes


class FrameSynchronizer:
    """
    Growing byte buffer scanned for fixed-length windows anchored by the
    configured start/end markers. A window that fails either marker costs
    exactly one leading byte, so the scan recovers from any amount of garbage.
    """

    def __init__(self, spec: FrameSpec):
        self.spec = spec
        self._buffer = bytearray()
        self.discarded = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def extend(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)

    def try_extract_frame(self) -> Optional[bytes]:
        length = self.spec.length
        while len(self._buffer) >= length:
            window = bytes(self._buffer[:length])
            if self.spec.matches(window):
                del self._buffer[:length]
                return window
            del self._buffer[0]
            self.discarded += 1
        return None

    def reset(self) -> None:
        self._buffer.clear()


def validate_frame(window: Sequence[int], checksum: Optional[ChecksumSpec]) -> bool:
    if checksum is None:
        return True
    return evaluate(checksum.eval, window) == evaluate(checksum.compare, window)


def extract_fields(window: Sequence[int], fields: Iterable[FieldSpec]) -> Dict[str, Number]:
    values: Dict[str, Number] = {}
    for spec in fields:
        try:
            values[spec.name] = evaluate(spec.expression, window)
        except FormulaError as exc:
            raise FormulaError(f"field '{spec.name}': {exc}") from exc
    return values


class FrameParser:
    """
    Streaming decoder for one sensor descriptor: synchronize, validate the
    checksum pair, then extract fields. Failures are counted and reported via
    ``on_error``; they never stop the stream.
    """

    def __init__(
        self,
        descriptor: SensorDescriptor,
        on_error: Optional[Callable[[str], None]] = None,
        on_raw_frame: Optional[Callable[[bytes], None]] = None,
    ):
        self.descriptor = descriptor
        self.frame_spec = descriptor.frame_spec()
        self.checksum = descriptor.checksum_spec()
        self.fields: List[FieldSpec] = descriptor.field_specs()
        self.on_error = on_error
        self.on_raw_frame = on_raw_frame
        self._sync = FrameSynchronizer(self.frame_spec)
        self._stats: Dict[str, int] = {"frames": 0, "checksum_errors": 0, "formula_errors": 0}
        self._log = logging.getLogger(__name__)

    def feed(self, chunk: bytes) -> Iterator[Reading]:
        if chunk:
            self._sync.extend(chunk)
        while True:
            window = self._sync.try_extract_frame()
            if window is None:
                break
            reading = self._decode(window)
            if reading is not None:
                yield reading

    def parse(self, chunks: Iterable[bytes]) -> Iterator[Reading]:
        for chunk in chunks:
            yield from self.feed(chunk)

    def _decode(self, window: bytes) -> Optional[Reading]:
        try:
            valid = validate_frame(window, self.checksum)
        except FormulaError as exc:
            self._stats["checksum_errors"] += 1
            self._stats["formula_errors"] += 1
            self._report(f"Checksum formula error: {exc}", window)
            return None
        if not valid:
            self._stats["checksum_errors"] += 1
            self._report("Checksum failed", window)
            return None
        if self.on_raw_frame is not None:
            self.on_raw_frame(window)
        try:
            values = extract_fields(window, self.fields)
        except FormulaError as exc:
            self._stats["formula_errors"] += 1
            self._report(f"Field formula error: {exc}", window)
            return None
        self._stats["frames"] += 1
        return Reading(values=values, raw=window)

    def _report(self, message: str, window: bytes) -> None:
        self._log.debug("%s (frame=%s)", message, window.hex(" "))
        if self.on_error is not None:
            self.on_error(message)

    def stats(self) -> Dict[str, int]:
        stats = dict(self._stats)
        stats["discarded_bytes"] = self._sync.discarded
        return stats

    @property
    def buffered(self) -> int:
        return self._sync.buffered

    def reset(self) -> None:
        self._sync.reset()
