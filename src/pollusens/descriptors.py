"""
Sensor descriptors and the inheritance resolver.

A descriptor document lists raw sensor entries. An entry may name another
entry in ``inherits_from`` and only declare what differs; resolution flattens
every entry into a self-contained :class:`SensorDescriptor`.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

NONE_SENTINEL = "none"
SECTIONS = ("port", "frame", "checksum", "data")


class DescriptorError(ValueError):
    """A resolved descriptor is incomplete or malformed."""


class SensorNotFoundError(LookupError):
    def __init__(self, name: str):
        super().__init__(f"Sensor '{name}' not found in configuration")
        self.name = name


@dataclass(frozen=True)
class ConfigWarning:
    kind: str  # missing_base | cycle | duplicate
    sensor: str
    message: str


@dataclass(frozen=True)
class PortSettings:
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: float = 1
    parity: str = "none"
    flow_control: str = "none"
    extra: Mapping[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "PortSettings":
        known = {"baudRate", "dataBits", "stopBits", "parity", "flowControl"}
        try:
            return PortSettings(
                baud_rate=int(data.get("baudRate", 9600)),
                data_bits=int(data.get("dataBits", 8)),
                stop_bits=float(data.get("stopBits", 1)),
                parity=str(data.get("parity", "none")).lower(),
                flow_control=str(data.get("flowControl", "none")).lower(),
                extra={key: value for key, value in data.items() if key not in known},
            )
        except (TypeError, ValueError) as exc:
            raise DescriptorError(f"Invalid port settings: {exc}") from exc


def _parse_byte(value: Any) -> int:
    if isinstance(value, bool):
        raise DescriptorError(f"Invalid marker byte {value!r}")
    if isinstance(value, str):
        if not value.lower().startswith("0x"):
            raise DescriptorError(f"Marker byte {value!r} must be written as 0x..")
        try:
            value = int(value, 16)
        except ValueError as exc:
            raise DescriptorError(f"Invalid marker byte {value!r}") from exc
    if not isinstance(value, int) or not 0 <= value <= 0xFF:
        raise DescriptorError(f"Marker byte {value!r} is not in 0..255")
    return value


def parse_marker(value: Any) -> Optional[bytes]:
    """Parse a start/end marker: ``"none"``, one byte, or a list of bytes."""
    if value is None:
        return None
    if isinstance(value, str) and value.lower() == NONE_SENTINEL:
        return None
    if isinstance(value, (list, tuple)):
        return bytes(_parse_byte(item) for item in value) or None
    return bytes([_parse_byte(value)])


@dataclass(frozen=True)
class FrameSpec:
    length: int
    start: Optional[bytes] = None
    end: Optional[bytes] = None

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "FrameSpec":
        length = data.get("length")
        if isinstance(length, float) and length.is_integer():
            length = int(length)
        if isinstance(length, bool) or not isinstance(length, int) or length <= 0:
            raise DescriptorError(f"frame.length must be a positive integer, got {length!r}")
        start = parse_marker(data.get("startByte"))
        end = parse_marker(data.get("endByte"))
        for label, marker in (("startByte", start), ("endByte", end)):
            if marker is not None and len(marker) > length:
                raise DescriptorError(
                    f"frame.{label} has {len(marker)} bytes but the frame is only {length} long"
                )
        return FrameSpec(length=length, start=start, end=end)

    def matches(self, window: bytes) -> bool:
        if self.start is not None and not window.startswith(self.start):
            return False
        if self.end is not None and not window.endswith(self.end):
            return False
        return True


@dataclass(frozen=True)
class ChecksumSpec:
    eval: str
    compare: str

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> Optional["ChecksumSpec"]:
        if not data:
            return None
        left, right = data.get("eval"), data.get("compare")
        if not isinstance(left, str) or not isinstance(right, str):
            raise DescriptorError("checksum requires both 'eval' and 'compare' formulas")
        return ChecksumSpec(eval=left, compare=right)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    expression: str
    unit: Optional[str] = None

    @staticmethod
    def from_item(name: str, value: Any) -> "FieldSpec":
        if isinstance(value, str):
            return FieldSpec(name=name, expression=value)
        if isinstance(value, Mapping) and isinstance(value.get("value"), str):
            unit = value.get("unit")
            return FieldSpec(name=name, expression=value["value"], unit=None if unit is None else str(unit))
        raise DescriptorError(f"data.{name} must be a formula string or an object with 'value'")


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class SensorDescriptor:
    """Resolved, self-contained protocol definition for one sensor type."""

    name: str
    command: Optional[str] = None
    send_cmd_period: Any = None
    port: Mapping[str, Any] = field(default_factory=dict)
    frame: Mapping[str, Any] = field(default_factory=dict)
    checksum: Mapping[str, Any] = field(default_factory=dict)
    data: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for section in SECTIONS:
            object.__setattr__(self, section, _freeze(getattr(self, section) or {}))
        if self.command is not None and not isinstance(self.command, str):
            object.__setattr__(self, "command", str(self.command))

    @staticmethod
    def from_entry(entry: Mapping[str, Any]) -> "SensorDescriptor":
        """Build a descriptor from an entry's own fields, ignoring inheritance."""
        return SensorDescriptor(
            name=str(entry["name"]),
            command=entry.get("command"),
            send_cmd_period=entry.get("send_cmd_period"),
            **{section: _section(entry, section) for section in SECTIONS},
        )

    def port_settings(self) -> PortSettings:
        return PortSettings.from_mapping(self.port)

    def frame_spec(self) -> FrameSpec:
        return FrameSpec.from_mapping(self.frame)

    def checksum_spec(self) -> Optional[ChecksumSpec]:
        return ChecksumSpec.from_mapping(self.checksum)

    def field_specs(self) -> List[FieldSpec]:
        return [FieldSpec.from_item(name, value) for name, value in self.data.items()]

    def as_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"name": self.name}
        if self.command is not None:
            result["command"] = self.command
        if self.send_cmd_period is not None:
            result["send_cmd_period"] = self.send_cmd_period
        for section in SECTIONS:
            result[section] = _thaw(getattr(self, section))
        return result

    def with_overrides(self, overrides: Mapping[str, Any]) -> "SensorDescriptor":
        """Return a copy with nested *overrides* applied (see ``config.parse_overrides``)."""
        merged = _deep_update(self.as_dict(), overrides)
        merged["name"] = self.name
        return SensorDescriptor.from_entry(merged)


def _deep_update(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            merged[key] = _deep_update(base[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _section(entry: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = entry.get(key)
    if isinstance(value, Mapping):
        return copy.deepcopy(dict(value))
    return {}


def _merge(base: SensorDescriptor, entry: Mapping[str, Any]) -> SensorDescriptor:
    command = entry.get("command")
    period = entry.get("send_cmd_period")
    return SensorDescriptor(
        name=str(entry["name"]),
        command=base.command if command is None else command,
        send_cmd_period=base.send_cmd_period if period is None else period,
        **{
            section: {**_thaw(getattr(base, section)), **_section(entry, section)}
            for section in SECTIONS
        },
    )


@dataclass
class ResolveResult:
    descriptors: List[SensorDescriptor]
    diagnostics: List[ConfigWarning] = field(default_factory=list)

    def names(self) -> List[str]:
        return [descriptor.name for descriptor in self.descriptors]

    def get(self, name: str) -> SensorDescriptor:
        # later entries shadow earlier ones with the same name
        for descriptor in reversed(self.descriptors):
            if descriptor.name == name:
                return descriptor
        raise SensorNotFoundError(name)


class _Resolver:
    def __init__(self, entries: Iterable[Any]):
        self.entries: List[Mapping[str, Any]] = [
            entry for entry in entries if isinstance(entry, Mapping) and entry.get("name")
        ]
        self.diagnostics: List[ConfigWarning] = []
        self._lookup: Dict[str, Mapping[str, Any]] = {}
        self._resolved: Dict[int, SensorDescriptor] = {}
        for entry in self.entries:
            name = str(entry["name"])
            if name in self._lookup:
                self._warn("duplicate", name, f"Duplicate sensor name '{name}'; the later entry shadows the earlier")
            self._lookup[name] = entry

    def run(self) -> ResolveResult:
        descriptors = [self._resolve(entry, ()) for entry in self.entries]
        return ResolveResult(descriptors=descriptors, diagnostics=list(self.diagnostics))

    def _warn(self, kind: str, sensor: str, message: str) -> None:
        logger.warning(message)
        self.diagnostics.append(ConfigWarning(kind=kind, sensor=sensor, message=message))

    def _resolve(self, entry: Mapping[str, Any], stack: Tuple[str, ...]) -> SensorDescriptor:
        key = id(entry)
        if key in self._resolved:
            return self._resolved[key]
        name = str(entry["name"])
        base_name = entry.get("inherits_from")
        if not base_name:
            resolved = SensorDescriptor.from_entry(entry)
        elif name in stack or self._cycle(entry) is not None:
            chain = self._cycle(entry) or [*stack, name]
            self._warn("cycle", name, "Circular inheritance: " + " -> ".join(chain))
            resolved = SensorDescriptor.from_entry(entry)
        elif str(base_name) not in self._lookup:
            self._warn("missing_base", name, f"Base sensor '{base_name}' not found for '{name}'")
            resolved = SensorDescriptor.from_entry(entry)
        else:
            base = self._resolve(self._lookup[str(base_name)], (*stack, name))
            resolved = _merge(base, entry)
        self._resolved[key] = resolved
        return resolved

    def _cycle(self, entry: Mapping[str, Any]) -> Optional[List[str]]:
        """Return the chain if following ``inherits_from`` leads back to *entry*."""
        name = str(entry["name"])
        chain = [name]
        current = entry
        while current.get("inherits_from"):
            base_name = str(current["inherits_from"])
            if base_name == name:
                return chain + [name]
            if base_name in chain or base_name not in self._lookup:
                return None
            chain.append(base_name)
            current = self._lookup[base_name]
        return None


def resolve_descriptors(entries: Sequence[Any], sensor_name: Optional[str] = None) -> ResolveResult:
    """
    Resolve every named entry of a descriptor document.

    Missing bases, inheritance cycles and duplicate names are reported as
    diagnostics and resolved with the entry's own fields. With *sensor_name*
    only the matching descriptor is returned; :class:`SensorNotFoundError` is
    raised when there is none.
    """
    result = _Resolver(entries).run()
    if sensor_name is not None:
        return ResolveResult(descriptors=[result.get(sensor_name)], diagnostics=result.diagnostics)
    return result


def resolve_by_name(entries: Sequence[Any], name: str) -> SensorDescriptor:
    return resolve_descriptors(entries, name).descriptors[0]


def list_sensor_names(entries: Sequence[Any]) -> List[str]:
    return [str(entry["name"]) for entry in entries if isinstance(entry, Mapping) and entry.get("name")]
