"""Persistence and summaries for decoded readings."""
from __future__ import annotations

import csv
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, TextIO

import numpy as np
import pandas as pd

from .descriptors import FieldSpec
from .expression import Number

TIMESTAMP_COLUMN = "timestamp"


class CsvRecorder:
    """
    Lazily creates a CSV writer when the first reading arrives, so a session
    that never decodes a frame leaves no empty file behind. The first line is
    a ``#`` comment carrying the sensor name and field units.
    """

    def __init__(
        self,
        path: Path,
        sensor: str,
        fields: Sequence[FieldSpec],
        clock: Callable[[], float] = time.time,
    ):
        self.path = path
        self.sensor = sensor
        self.fields = list(fields)
        self.rows = 0
        self._clock = clock
        self._file_handle: Optional[TextIO] = None
        self._writer: Optional[csv.DictWriter] = None

    @property
    def fieldnames(self) -> List[str]:
        return [TIMESTAMP_COLUMN, *(spec.name for spec in self.fields)]

    def metadata_line(self) -> str:
        items = [f"sensor={self.sensor}"]
        items.extend(f"unit.{spec.name}={spec.unit}" for spec in self.fields if spec.unit)
        return "# " + " ".join(items)

    def append(self, values: Mapping[str, Number], timestamp: Optional[float] = None) -> None:
        if self._writer is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.path.open("w", newline="", encoding="utf-8")
            self._file_handle.write(self.metadata_line() + "\n")
            self._writer = csv.DictWriter(self._file_handle, fieldnames=self.fieldnames, extrasaction="ignore")
            self._writer.writeheader()
        row: Dict[str, object] = {TIMESTAMP_COLUMN: self._clock() if timestamp is None else timestamp}
        row.update(values)
        self._writer.writerow(row)
        assert self._file_handle is not None
        self._file_handle.flush()
        self.rows += 1

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._writer = None


def load_recording(path: str | Path) -> pd.DataFrame:
    """Load a recording written by :class:`CsvRecorder`."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    df = pd.read_csv(path, comment="#")
    if TIMESTAMP_COLUMN not in df.columns:
        raise ValueError(f"Recording {path} has no '{TIMESTAMP_COLUMN}' column")
    return df


def read_metadata(path: str | Path) -> Dict[str, str]:
    with Path(path).open("r", encoding="utf-8") as fh:
        first = fh.readline().strip()
    if not first.startswith("#"):
        return {}
    metadata: Dict[str, str] = {}
    for token in first[1:].split():
        if "=" in token:
            key, value = token.split("=", 1)
            metadata[key] = value
    return metadata


def summarize_recording(recording: pd.DataFrame) -> pd.DataFrame:
    """Per-field count/mean/std/min/max plus the recording's mean sample interval."""

    rows = []
    for column in recording.columns:
        if column == TIMESTAMP_COLUMN:
            continue
        values = pd.to_numeric(recording[column], errors="coerce").to_numpy(dtype=float)
        values = values[np.isfinite(values)]
        if values.size == 0:
            rows.append({"field": column, "count": 0, "mean": np.nan, "std": np.nan, "min": np.nan, "max": np.nan})
            continue
        rows.append(
            {
                "field": column,
                "count": int(values.size),
                "mean": float(np.mean(values)),
                "std": float(np.std(values, ddof=1)) if values.size > 1 else 0.0,
                "min": float(np.min(values)),
                "max": float(np.max(values)),
            }
        )
    summary = pd.DataFrame(rows, columns=["field", "count", "mean", "std", "min", "max"]).set_index("field")
    timestamps = recording[TIMESTAMP_COLUMN].to_numpy(dtype=float)
    interval = float(np.mean(np.diff(timestamps))) if timestamps.size > 1 else float("nan")
    summary.attrs["mean_interval_sec"] = interval
    return summary
