"""Plotting helpers for measurement logs."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import pandas as pd

from .history import VOC_BASELINE


def plot_history(df: pd.DataFrame, output_dir: Path) -> Path:
    plt = _require_matplotlib()
    output_dir.mkdir(parents=True, exist_ok=True)
    fig, ax = plt.subplots(figsize=(10, 4))

    ax.plot(df["elapsed_sec"], df["voc_index"], color="tab:blue", label="VOC index")
    ax.axhline(VOC_BASELINE, color="black", linewidth=0.8, linestyle="--", label="baseline")
    ax.set_ylim(0, max(int(df["voc_index"].max()) + 20, VOC_BASELINE * 2))
    ax.set_title("VOC index")
    ax.set_xlabel("Time [s]")
    ax.set_ylabel("Index")
    ax.legend(loc="best")

    fig.tight_layout()
    out_path = output_dir / "voc_index.png"
    fig.savefig(out_path, dpi=150)
    plt.close(fig)
    return out_path


def _require_matplotlib() -> Any:
    try:
        import matplotlib
        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # type: ignore
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for plotting; install sgp40[plot]") from exc
    except Exception as exc:  # pragma: no cover - environment issues
        raise RuntimeError(f"matplotlib initialisation failed: {exc}") from exc
    return plt
