"""Exception hierarchy shared by the sensor and the VOC index engine."""
from __future__ import annotations

from typing import Optional


class SGP40Error(Exception):
    """Base class for every error raised by this package."""


class DeviceNotFound(SGP40Error):
    """The transport could not be opened or the sensor did not identify itself."""


class TransportReadError(SGP40Error):
    """A single raw read failed; the next cycle may succeed."""


class SensorStopped(SGP40Error):
    """The sampling thread is no longer running."""


class EngineError(SGP40Error):
    pass


class EngineComputeError(EngineError):
    """The algorithm answered with ``ERR: <reason>`` or an unreadable payload."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class EngineTerminated(EngineError):
    """The engine is gone and has to be started again."""


class EngineTimeout(EngineTerminated):
    pass


class EngineCrashed(EngineTerminated):
    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode
