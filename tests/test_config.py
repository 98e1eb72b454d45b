from __future__ import annotations

import json

import pytest

from pollusens.config import document_entries, load_document, parse_overrides


def test_parse_overrides_builds_nested_mapping() -> None:
    overrides = parse_overrides(
        [
            "frame.length=12",
            "port.baudRate=115200",
            "port.parity=even",
            "frame.startByte=0xAA",
            "frame.endByte=none",
            "send_cmd_period=0.5",
            "frame.extra=[1, 2]",
            "command=null",
            "port.rtscts=true",
        ]
    )
    assert overrides == {
        "frame": {"length": 12, "startByte": "0xAA", "endByte": "none", "extra": [1, 2]},
        "port": {"baudRate": 115200, "parity": "even", "rtscts": True},
        "send_cmd_period": 0.5,
        "command": None,
    }


def test_parse_overrides_empty() -> None:
    assert parse_overrides(None) == {}
    assert parse_overrides([]) == {}


@pytest.mark.parametrize("item", ["frame.length", "=3", "frame..length=3"])
def test_parse_overrides_rejects_malformed_items(item: str) -> None:
    with pytest.raises(ValueError):
        parse_overrides([item])


def test_parse_overrides_rejects_scalar_conflict() -> None:
    with pytest.raises(ValueError):
        parse_overrides(["frame=3", "frame.length=4"])


def test_load_document_with_sensor_list(tmp_path) -> None:
    path = tmp_path / "sensors.json"
    path.write_text(json.dumps({"sensors": [{"name": "A"}, {"name": "B"}]}), encoding="utf-8")
    assert [entry["name"] for entry in load_document(path)] == ["A", "B"]
    assert load_document(str(path))[0] == {"name": "A"}


def test_load_document_with_single_object(tmp_path) -> None:
    path = tmp_path / "one.json"
    path.write_text(json.dumps({"name": "solo", "frame": {"length": 4}}), encoding="utf-8")
    assert load_document(path) == [{"name": "solo", "frame": {"length": 4}}]


def test_document_entries_rejects_non_objects() -> None:
    with pytest.raises(ValueError):
        document_entries([{"name": "A"}])


def test_load_document_invalid_json(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        load_document(path)
