"""Configurable frame decoder for serial-attached sensors."""

from importlib.metadata import PackageNotFoundError, version

from .commands import CommandScheduler, parse_command
from .config import SessionRuntime, load_document, parse_overrides
from .descriptors import (
    ChecksumSpec,
    ConfigWarning,
    DescriptorError,
    FieldSpec,
    FrameSpec,
    PortSettings,
    ResolveResult,
    SensorDescriptor,
    SensorNotFoundError,
    list_sensor_names,
    resolve_by_name,
    resolve_descriptors,
)
from .expression import FormulaError, compile_expression, evaluate
from .frames import FrameParser, FrameSynchronizer, Reading, extract_fields, validate_frame
from .runner import SensorSession, SessionLoop, SessionState, connect_by_name

try:  # pragma: no cover - fallback when package metadata missing
    __version__ = version("pollusens")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "ChecksumSpec",
    "CommandScheduler",
    "ConfigWarning",
    "DescriptorError",
    "FieldSpec",
    "FormulaError",
    "FrameParser",
    "FrameSpec",
    "FrameSynchronizer",
    "PortSettings",
    "Reading",
    "ResolveResult",
    "SensorDescriptor",
    "SensorNotFoundError",
    "SensorSession",
    "SessionLoop",
    "SessionRuntime",
    "SessionState",
    "compile_expression",
    "connect_by_name",
    "evaluate",
    "extract_fields",
    "list_sensor_names",
    "load_document",
    "parse_command",
    "parse_overrides",
    "resolve_by_name",
    "resolve_descriptors",
    "validate_frame",
]
