"""SGP40 VOC index host: sampling loop plus subprocess-backed VOC algorithm."""

from importlib.metadata import PackageNotFoundError, version

from .config import EngineSettings, HostRuntime, SensorConfig, load_config
from .engine import EngineState, VocIndexEngine, get_engine, start_engine
from .errors import (
    DeviceNotFound,
    EngineComputeError,
    EngineCrashed,
    EngineError,
    EngineTerminated,
    EngineTimeout,
    SensorStopped,
    SGP40Error,
    TransportReadError,
)
from .models import AlgorithmSnapshot, CompensationInput, Measurement, TuningParams
from .sensor import SGP40, start
from .transport import I2CTransport, Transport

try:  # pragma: no cover - fallback when package metadata missing
    __version__ = version("sgp40")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "AlgorithmSnapshot",
    "CompensationInput",
    "DeviceNotFound",
    "EngineComputeError",
    "EngineCrashed",
    "EngineError",
    "EngineSettings",
    "EngineState",
    "EngineTerminated",
    "EngineTimeout",
    "HostRuntime",
    "I2CTransport",
    "Measurement",
    "SGP40",
    "SGP40Error",
    "SensorConfig",
    "SensorStopped",
    "Transport",
    "TransportReadError",
    "TuningParams",
    "VocIndexEngine",
    "get_engine",
    "load_config",
    "start",
    "start_engine",
]
