"""Measurement log persistence and summary statistics."""
from __future__ import annotations

import csv
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, TextIO

import numpy as np
import pandas as pd

from .models import AlgorithmSnapshot, CompensationInput, Measurement

FIELDNAMES = ["timestamp_ms", "voc_index", "humidity_rh", "temperature_c"]
REQUIRED_COLUMNS = {"timestamp_ms", "voc_index"}
VOC_BASELINE = 100


class MeasurementLog:
    """
    CSV writer opened on the first record, so dry runs and tests that never
    produce a measurement leave the filesystem alone.
    """

    def __init__(self, path: Path):
        self.path = path
        self._writer: Optional[csv.DictWriter[str]] = None
        self._file_handle: Optional[TextIO] = None

    def append(self, measurement: Measurement, compensation: CompensationInput) -> None:
        if self._writer is None or self._file_handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = self.path.open("w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._file_handle, fieldnames=FIELDNAMES)
            self._writer.writeheader()
        self._writer.writerow({**asdict(measurement), **asdict(compensation)})
        self._file_handle.flush()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._writer = None


@dataclass(frozen=True)
class HistorySummary:
    samples: int
    span_sec: float
    mean: float
    median: float
    p95: float
    maximum: int
    above_baseline: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


def load_history(path: str | Path) -> pd.DataFrame:
    """Read a measurement log written by `MeasurementLog`, sorted by time."""

    df = pd.read_csv(Path(path))
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")
    df = df.sort_values("timestamp_ms", kind="mergesort").reset_index(drop=True)
    start = df["timestamp_ms"].min() if len(df) else 0
    df["elapsed_sec"] = (df["timestamp_ms"] - start) / 1000.0
    return df


def summarize(df: pd.DataFrame) -> HistorySummary:
    voc = df["voc_index"].to_numpy(dtype=float)
    if voc.size == 0:
        raise ValueError("Measurement log is empty")
    timestamps = df["timestamp_ms"].to_numpy(dtype=float)
    return HistorySummary(
        samples=int(voc.size),
        span_sec=float((timestamps.max() - timestamps.min()) / 1000.0),
        mean=float(np.mean(voc)),
        median=float(np.median(voc)),
        p95=float(np.percentile(voc, 95)),
        maximum=int(np.max(voc)),
        above_baseline=float(np.count_nonzero(voc > VOC_BASELINE) / voc.size),
    )


def write_summary(summary: HistorySummary, output_dir: Path) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / "summary.csv"
    rows = [{"metric": key, "value": value} for key, value in summary.as_dict().items()]
    pd.DataFrame(rows).to_csv(out_path, index=False)
    return out_path


def load_snapshot(path: Path) -> AlgorithmSnapshot:
    return AlgorithmSnapshot.from_mapping(json.loads(path.read_text(encoding="utf-8")))


def save_snapshot(path: Path, snapshot: AlgorithmSnapshot) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(snapshot.as_dict(), indent=2), encoding="utf-8")
