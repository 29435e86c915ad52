"""Value types exchanged between the sensor, the engine and callers."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

RAW_MAX = 0xFFFF
TUNING_MAX = 0x7FFF_FFFF
VOC_INDEX_MIN = 1
VOC_INDEX_MAX = 500


@dataclass
class CompensationInput:
    """Ambient conditions used to compensate the raw reading."""

    humidity_rh: float = 50.0
    temperature_c: float = 25.0


@dataclass(frozen=True)
class Measurement:
    timestamp_ms: int
    voc_index: int


@dataclass(frozen=True)
class AlgorithmSnapshot:
    """
    Learning state of the VOC algorithm. Only meaningful to the algorithm
    itself; it can be saved with `get_states` and handed back with `set_states`
    to skip the initial learning phase after a short interruption.
    """

    mean: int
    std: int

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "AlgorithmSnapshot":
        if "mean" not in data or "std" not in data:
            raise ValueError("algorithm states require fields 'mean' and 'std'")
        return AlgorithmSnapshot(mean=int(data["mean"]), std=int(data["std"]))


@dataclass(frozen=True)
class TuningParams:
    voc_index_offset: int = 100
    learning_time_hours: int = 12
    gating_max_duration_minutes: int = 180
    std_initial: int = 50

    def __post_init__(self) -> None:
        for name, value in asdict(self).items():
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{name} must be an integer, got {value!r}")
            if not 0 <= value <= TUNING_MAX:
                raise ValueError(f"{name} must be within 0..{TUNING_MAX}, got {value}")

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (
            self.voc_index_offset,
            self.learning_time_hours,
            self.gating_max_duration_minutes,
            self.std_initial,
        )

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "TuningParams":
        defaults = TuningParams()
        return TuningParams(
            voc_index_offset=int(data.get("voc_index_offset", defaults.voc_index_offset)),
            learning_time_hours=int(data.get("learning_time_hours", defaults.learning_time_hours)),
            gating_max_duration_minutes=int(
                data.get("gating_max_duration_minutes", defaults.gating_max_duration_minutes)
            ),
            std_initial=int(data.get("std_initial", defaults.std_initial)),
        )


def check_raw_sample(sraw: int) -> int:
    if isinstance(sraw, bool) or not isinstance(sraw, int):
        raise TypeError(f"raw sample must be an integer, got {sraw!r}")
    if not 0 <= sraw <= RAW_MAX:
        raise ValueError(f"raw sample must be within 0..0x{RAW_MAX:04X}, got {sraw}")
    return sraw
