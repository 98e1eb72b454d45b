from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Sequence


@dataclass
class SessionRuntime:
    read_chunk_size: int = 256
    poll_interval_sec: float = 0.1
    stats_log_interval: float = 60.0
    join_timeout_sec: float = 2.0


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def document_entries(document: Any) -> List[Dict[str, Any]]:
    """
    Return the raw sensor entries held by a parsed descriptor document.

    A document is either ``{"sensors": [...]}`` or a single sensor object.
    Entries are returned as-is; name checks happen during resolution.
    """
    if isinstance(document, dict) and isinstance(document.get("sensors"), list):
        return list(document["sensors"])
    if isinstance(document, dict):
        return [document]
    raise ValueError("Descriptor document must be a JSON object")


def load_document(path: Path | str) -> List[Dict[str, Any]]:
    return document_entries(_load_json(Path(path)))


def parse_overrides(items: Sequence[str] | None) -> Dict[str, Any]:
    """
    Turn CLI-style overrides into a nested mapping, e.g.
        ["frame.length=10", "port.baudRate=115200"]
    becomes ``{"frame": {"length": 10}, "port": {"baudRate": 115200}}``.
    """
    result: Dict[str, Any] = {}
    for item in items or []:
        key, value = _parse_override(item)
        _assign_nested(result, key, value)
    return result


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key or any(not part for part in key.split(".")):
        raise ValueError(f"Override key in '{item}' is empty")
    return key, _coerce_value(raw_value.strip())


def _coerce_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        # "none" is also the marker/command sentinel, so keep it as a string
        return raw if lowered == "none" else None
    try:
        if lowered.startswith("0x"):
            return raw
        if "." in raw or "e" in lowered:
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if (raw.startswith("[") and raw.endswith("]")) or (raw.startswith("{") and raw.endswith("}")):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        nested = cursor.setdefault(part, {})
        if not isinstance(nested, dict):
            raise ValueError(f"Override '{dotted_key}' conflicts with a scalar at '{part}'")
        cursor = nested
    cursor[parts[-1]] = value
