"""Command line interface for the pollusens package."""
from __future__ import annotations

import json
import logging
import math
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import serial
import typer

from .config import SessionRuntime, load_document, parse_overrides
from .descriptors import (
    DescriptorError,
    PortSettings,
    SensorDescriptor,
    SensorNotFoundError,
    list_sensor_names,
    resolve_descriptors,
)
from .expression import Number
from .recording import CsvRecorder, load_recording, read_metadata, summarize_recording
from .runner import SensorSession
from .transport import SerialTransport, StreamTransport, Transport

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT = Path("host_pi/sensors.json")

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Decode serial sensor frames described by a JSON descriptor document.",
)


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (DEBUG, INFO, WARNING...)."),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level '{log_level}'", param_hint="--log-level")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_entries(path: Path) -> List[Dict[str, Any]]:
    try:
        return load_document(path)
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Failed to load descriptor document {path}: {exc}") from exc


def _select(entries: List[Dict[str, Any]], name: str, overrides: Optional[List[str]]) -> SensorDescriptor:
    try:
        result = resolve_descriptors(entries, name)
    except SensorNotFoundError as exc:
        raise typer.BadParameter(str(exc), param_hint="NAME") from exc
    for warning in result.diagnostics:
        typer.echo(f"[warning] {warning.message}", err=True)
    descriptor = result.descriptors[0]
    if overrides:
        try:
            descriptor = descriptor.with_overrides(parse_overrides(overrides))
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--set") from exc
    return descriptor


@app.command("list")
def list_sensors(
    config_path: Path = typer.Option(DEFAULT_DOCUMENT, "--config", "-c", help="Descriptor document (JSON)."),
) -> None:
    """List the sensor names declared in the descriptor document."""

    for name in list_sensor_names(_load_entries(config_path)):
        typer.echo(name)


@app.command()
def show(
    name: str = typer.Argument(..., help="Sensor name."),
    config_path: Path = typer.Option(DEFAULT_DOCUMENT, "--config", "-c", help="Descriptor document (JSON)."),
    override: Optional[List[str]] = typer.Option(
        None, "--set", help="Override descriptor keys, e.g. --set frame.length=10"
    ),
) -> None:
    """Print the resolved descriptor with inheritance flattened."""

    descriptor = _select(_load_entries(config_path), name, override)
    typer.echo(json.dumps(descriptor.as_dict(), indent=2))


@app.command("run")
def run_command(
    name: str = typer.Argument(..., help="Sensor name."),
    config_path: Path = typer.Option(DEFAULT_DOCUMENT, "--config", "-c", help="Descriptor document (JSON)."),
    port: str = typer.Option("/dev/ttyUSB0", "--port", "-p", help="Serial device. Use '-' to read from stdin."),
    override: Optional[List[str]] = typer.Option(
        None, "--set", help="Override descriptor keys, e.g. --set port.baudRate=115200"
    ),
    record: Optional[Path] = typer.Option(None, "--record", help="Write readings to this CSV file."),
    count: int = typer.Option(0, "--count", "-n", help="Stop after N readings (0 = run until interrupted)."),
    raw: bool = typer.Option(False, "--raw", help="Also print every accepted frame as hex."),
    chunk_size: int = typer.Option(256, "--chunk-size", help="Bytes requested per read."),
    poll_interval: float = typer.Option(0.1, "--poll-interval", help="Serial poll interval (seconds)."),
    stats_interval: float = typer.Option(60.0, "--stats-interval", help="Seconds between stats log lines."),
) -> None:
    """Connect to a sensor and print decoded readings."""

    descriptor = _select(_load_entries(config_path), name, override)
    runtime = SessionRuntime(
        read_chunk_size=chunk_size,
        poll_interval_sec=poll_interval,
        stats_log_interval=stats_interval,
    )

    def opener(settings: PortSettings) -> Transport:
        if port == "-":
            return StreamTransport(sys.stdin.buffer)
        return SerialTransport.open(port, settings, runtime.poll_interval_sec)

    try:
        fields = descriptor.field_specs()
    except DescriptorError as exc:
        raise typer.BadParameter(str(exc), param_hint="NAME") from exc
    recorder = CsvRecorder(record, descriptor.name, fields) if record else None
    done = threading.Event()
    received = 0

    def on_reading(values: Dict[str, Number]) -> None:
        nonlocal received
        typer.echo(" ".join(f"{key}={value}" for key, value in values.items()))
        if recorder is not None:
            recorder.append(values)
        received += 1
        if count and received >= count:
            done.set()

    session = SensorSession(descriptor, opener, runtime)
    session.subscribe(
        on_reading=on_reading,
        on_raw_frame=(lambda window: typer.echo("raw: " + window.hex(" "))) if raw else None,
        on_error=lambda message: typer.echo(f"[error] {message}", err=True),
    )
    try:
        session.connect()
    except (DescriptorError, serial.SerialException, OSError) as exc:
        if recorder is not None:
            recorder.close()
        typer.echo(f"Failed to connect to {descriptor.name}: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    interval_sec = max(runtime.stats_log_interval, 1.0)
    next_log = time.monotonic() + interval_sec
    try:
        while not done.wait(0.2):
            if session.join(timeout=0):
                break
            if time.monotonic() >= next_log:
                logger.info("%s", _format_stats(session.stats()))
                next_log = time.monotonic() + interval_sec
    except KeyboardInterrupt:
        logger.info("Stopping session (Ctrl+C)")
    finally:
        session.disconnect()
        if recorder is not None:
            recorder.close()
        logger.info("Final stats: %s", _format_stats(session.stats()))


def _format_stats(stats: Dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in stats.items())


@app.command()
def summary(
    input_path: Path = typer.Option(..., "--in", help="Recording CSV written by 'run --record'.", exists=True, readable=True),
) -> None:
    """Summarize a recording: per-field statistics."""

    try:
        recording = load_recording(input_path)
    except ValueError as exc:
        typer.echo(f"Invalid recording: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    metadata = read_metadata(input_path)
    table = summarize_recording(recording)
    typer.echo(f"Sensor: {metadata.get('sensor', 'n/a')}")
    typer.echo(f"Readings: {len(recording)}")
    interval = table.attrs.get("mean_interval_sec", float("nan"))
    if not math.isnan(interval):
        typer.echo(f"Mean interval: {interval:.3f}s")
    typer.echo(table.to_string())


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
