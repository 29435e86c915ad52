from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .models import TuningParams

DEFAULT_BUS_NAME = "i2c-1"
DEFAULT_BUS_ADDRESS = 0x59
DEFAULT_HUMIDITY_RH = 50.0
DEFAULT_TEMPERATURE_C = 25.0
DEFAULT_ENGINE_EXECUTABLE = Path(__file__).resolve().parent / "priv" / "sgp40"


@dataclass
class EngineSettings:
    executable: Path = DEFAULT_ENGINE_EXECUTABLE
    args: List[str] = field(default_factory=list)
    timeout_sec: float = 0.5
    line_max: int = 1024
    call_timeout_sec: float = 5.0

    def command(self) -> List[str]:
        return [str(self.executable), *self.args]


@dataclass
class HostRuntime:
    polling_interval_sec: float = 1.0
    stats_log_interval: float = 60.0


@dataclass
class SensorConfig:
    bus_name: str = DEFAULT_BUS_NAME
    bus_address: int = DEFAULT_BUS_ADDRESS
    humidity_rh: float = DEFAULT_HUMIDITY_RH
    temperature_c: float = DEFAULT_TEMPERATURE_C
    output_csv: Optional[Path] = None
    states_file: Optional[Path] = None
    tuning: Optional[TuningParams] = None
    engine: EngineSettings = field(default_factory=EngineSettings)
    host: HostRuntime = field(default_factory=HostRuntime)

    def __post_init__(self) -> None:
        if not 0 <= int(self.bus_address) <= 127:
            raise ValueError(f"bus_address must be within 0..127, got {self.bus_address}")
        if self.host.polling_interval_sec <= 0:
            raise ValueError("host.polling_interval_sec must be positive")
        if self.engine.timeout_sec <= 0:
            raise ValueError("engine.timeout_sec must be positive")


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> SensorConfig:
    """
    Build a sensor configuration from an optional JSON file and CLI-style
    overrides. Overrides are dotted `key=value` pairs, e.g.:
        ["bus_address=0x59", "engine.timeout_sec=1.0", "tuning.learning_time_hours=24"]
    """
    data = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)

    engine_data = merged.get("engine") or {}
    host_data = merged.get("host") or {}
    tuning_data = merged.get("tuning")
    engine_defaults = EngineSettings()
    return SensorConfig(
        bus_name=str(merged.get("bus_name", DEFAULT_BUS_NAME)),
        bus_address=_as_int(merged.get("bus_address", DEFAULT_BUS_ADDRESS)),
        humidity_rh=float(merged.get("humidity_rh", DEFAULT_HUMIDITY_RH)),
        temperature_c=float(merged.get("temperature_c", DEFAULT_TEMPERATURE_C)),
        output_csv=Path(merged["output_csv"]) if merged.get("output_csv") else None,
        states_file=Path(merged["states_file"]) if merged.get("states_file") else None,
        tuning=TuningParams.from_mapping(tuning_data) if tuning_data else None,
        engine=EngineSettings(
            executable=Path(engine_data.get("executable", engine_defaults.executable)),
            args=[str(arg) for arg in engine_data.get("args", [])],
            timeout_sec=float(engine_data.get("timeout_sec", engine_defaults.timeout_sec)),
            line_max=int(engine_data.get("line_max", engine_defaults.line_max)),
            call_timeout_sec=float(engine_data.get("call_timeout_sec", engine_defaults.call_timeout_sec)),
        ),
        host=HostRuntime(
            polling_interval_sec=float(host_data.get("polling_interval_sec", 1.0)),
            stats_log_interval=float(host_data.get("stats_log_interval", 60.0)),
        ),
    )


def _as_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 0)
    return int(value)


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    return key, _coerce_value(raw_value.strip())


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if raw.startswith(("[", "{")):
        return json.loads(raw)
    try:
        return int(raw, 0)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
