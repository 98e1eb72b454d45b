from __future__ import annotations

import json

import pytest
from typer.testing import CliRunner

from pollusens.cli import app

STREAM = bytes.fromhex("AA 03 03 AB FF AA 05 05 AB")


@pytest.fixture()
def config_path(tmp_path):
    document = {
        "sensors": [
            {
                "name": "gauge",
                "frame": {"length": 4, "startByte": "0xAA", "endByte": "0xAB"},
                "checksum": {"eval": "data[2]", "compare": "data[1]"},
                "data": {"v": {"value": "data[1] * 2", "unit": "mV"}},
            },
            {"name": "child", "inherits_from": "gauge", "data": {"w": "data[1]"}},
        ]
    }
    path = tmp_path / "sensors.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def test_list_prints_sensor_names(config_path) -> None:
    result = CliRunner().invoke(app, ["list", "--config", str(config_path)])
    assert result.exit_code == 0
    assert result.stdout.split() == ["gauge", "child"]


def test_show_prints_flattened_descriptor(config_path) -> None:
    result = CliRunner().invoke(app, ["show", "child", "--config", str(config_path), "--set", "frame.length=5"])
    assert result.exit_code == 0
    shown = json.loads(result.stdout)
    assert shown["name"] == "child"
    assert shown["frame"]["length"] == 5
    assert list(shown["data"]) == ["v", "w"]


def test_show_unknown_sensor_fails(config_path) -> None:
    result = CliRunner().invoke(app, ["show", "missing", "--config", str(config_path)])
    assert result.exit_code != 0


def test_missing_document_fails(tmp_path) -> None:
    result = CliRunner().invoke(app, ["list", "--config", str(tmp_path / "nope.json")])
    assert result.exit_code != 0


def test_run_decodes_stdin_until_end_of_stream(config_path) -> None:
    result = CliRunner().invoke(
        app,
        ["run", "child", "--config", str(config_path), "--port", "-", "--raw"],
        input=STREAM,
    )
    assert result.exit_code == 0
    assert "v=6 w=3" in result.stdout
    assert "v=10 w=5" in result.stdout
    assert "raw: aa 03 03 ab" in result.stdout


def test_run_stops_after_count(config_path) -> None:
    result = CliRunner().invoke(
        app,
        ["run", "gauge", "--config", str(config_path), "--port", "-", "--count", "1"],
        input=STREAM,
    )
    assert result.exit_code == 0
    assert "v=6" in result.stdout


def test_run_records_and_summary_reads_back(config_path, tmp_path) -> None:
    record = tmp_path / "readings.csv"
    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "run",
            "gauge",
            "--config",
            str(config_path),
            "--port",
            "-",
            "--record",
            str(record),
            "--set",
            "data.v=data[1]",
        ],
        input=STREAM,
    )
    assert result.exit_code == 0
    assert "v=3" in result.stdout
    assert record.read_text(encoding="utf-8").splitlines()[0] == "# sensor=gauge"

    result = runner.invoke(app, ["summary", "--in", str(record)])
    assert result.exit_code == 0
    assert "Sensor: gauge" in result.stdout
    assert "Readings: 2" in result.stdout
