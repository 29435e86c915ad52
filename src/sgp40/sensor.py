from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

from .config import SensorConfig
from .engine import DEFAULT_ENGINE_NAME, EngineState, VocIndexEngine, get_engine, start_engine
from .errors import DeviceNotFound, SensorStopped, SGP40Error
from .history import MeasurementLog
from .models import VOC_INDEX_MIN, AlgorithmSnapshot, CompensationInput, Measurement, TuningParams
from .transport import I2CTransport, Transport

logger = logging.getLogger(__name__)

CALL_TIMEOUT_SEC = 5.0

_TICK = object()
_STOP = object()


@dataclass
class _MeasureRequest:
    response: "queue.Queue[Union[Optional[Measurement], SGP40Error]]"


def format_serial(serial_id: Optional[int]) -> str:
    return "unknown" if serial_id is None else f"0x{serial_id:012X}"


class SGP40(threading.Thread):
    """
    Sampling loop for one SGP40 sensor.

    Every `host.polling_interval_sec` the thread reads a humidity/temperature
    compensated raw value and turns it into a VOC index through the engine.
    A failed read or computation is logged and the previous measurement is
    kept; the next tick is scheduled either way. Queries and compensation
    updates go through the same mailbox as the ticks, so they never interleave
    with a running cycle.
    """

    def __init__(
        self,
        transport: Transport,
        engine: VocIndexEngine,
        config: Optional[SensorConfig] = None,
        *,
        serial_id: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        history: Optional[MeasurementLog] = None,
    ):
        super().__init__(daemon=True, name="sgp40-sampler")
        self.transport = transport
        self.engine = engine
        self.engine_name = getattr(engine, "engine_name", DEFAULT_ENGINE_NAME)
        self.config = config or SensorConfig()
        self.serial_id = serial_id
        self._clock = clock
        self._history = history
        self._compensation = CompensationInput(self.config.humidity_rh, self.config.temperature_c)
        self._last_measurement: Optional[Measurement] = None
        self._mailbox: "queue.Queue[object]" = queue.Queue()
        self._timer: Optional[threading.Timer] = None
        self._running_lock = threading.Lock()
        self._running = True
        self._cycles = 0
        self._failures = 0
        self._next_stats = 0.0

    @property
    def compensation(self) -> CompensationInput:
        return self._compensation

    def measure(self) -> Optional[Measurement]:
        """Latest measurement, or None until the first cycle succeeds."""
        response: "queue.Queue[Union[Optional[Measurement], SGP40Error]]" = queue.Queue(maxsize=1)
        with self._running_lock:
            if not self._running:
                raise SensorStopped("SGP40 sampler is stopped")
            self._mailbox.put(_MeasureRequest(response))
        try:
            result = response.get(timeout=CALL_TIMEOUT_SEC)
        except queue.Empty as exc:
            raise SensorStopped("SGP40 sampler did not answer") from exc
        if isinstance(result, SGP40Error):
            raise result
        return result

    def update_rht(self, humidity_rh: float, temperature_c: float) -> None:
        """
        Update relative ambient humidity (RH %) and ambient temperature
        (degree C) used for compensation, starting with the next cycle.
        """
        for name, value in (("humidity_rh", humidity_rh), ("temperature_c", temperature_c)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"{name} must be a number, got {value!r}")
        self._mailbox.put(CompensationInput(float(humidity_rh), float(temperature_c)))

    def get_states(self) -> AlgorithmSnapshot:
        return self._current_engine().get_states()

    def set_states(self, snapshot: AlgorithmSnapshot) -> Optional[str]:
        return self._current_engine().set_states(snapshot)

    def set_tuning_params(self, params: TuningParams) -> Optional[str]:
        return self._current_engine().set_tuning_params(params)

    def _current_engine(self) -> VocIndexEngine:
        # A terminated engine is replaced by whatever is registered under its name.
        engine = self.engine
        if getattr(engine, "state", None) is EngineState.TERMINATED:
            replacement = get_engine(self.engine_name)
            if replacement is not None and replacement is not engine:
                logger.info("Switching to restarted VOC index engine %s (pid=%s)", self.engine_name, replacement.pid)
                self.engine = engine = replacement
        return engine

    def stats(self) -> Dict[str, int]:
        return {"cycles": self._cycles, "failures": self._failures}

    def stop(self, timeout: float = 2.0) -> None:
        self._mailbox.put(_STOP)
        if self.is_alive():
            self.join(timeout=timeout)

    def run(self) -> None:
        logger.info("Initializing sensor %s", format_serial(self.serial_id))
        self._next_stats = self._clock() + self.config.host.stats_log_interval
        try:
            self._read_and_maybe_put_measurement()
            self._schedule()
            while True:
                item = self._mailbox.get()
                if item is _STOP:
                    break
                if item is _TICK:
                    self._read_and_maybe_put_measurement()
                    self._schedule()
                elif isinstance(item, _MeasureRequest):
                    item.response.put(self._last_measurement)
                elif isinstance(item, CompensationInput):
                    self._compensation = item
        finally:
            self._shutdown()

    def _schedule(self) -> None:
        self._timer = threading.Timer(self.config.host.polling_interval_sec, self._mailbox.put, args=(_TICK,))
        self._timer.daemon = True
        self._timer.start()

    def _read_and_maybe_put_measurement(self) -> None:
        compensation = self._compensation
        self._cycles += 1
        try:
            sraw = self.transport.read_compensated_sample(compensation.humidity_rh, compensation.temperature_c)
            voc_index = self._current_engine().process(sraw)
        except (SGP40Error, OSError) as exc:
            self._failures += 1
            logger.error("Measurement failed: %s", exc)
        else:
            if voc_index < VOC_INDEX_MIN:
                logger.debug("VOC algorithm warming up (sraw=%d)", sraw)
            else:
                measurement = Measurement(timestamp_ms=int(self._clock() * 1000), voc_index=voc_index)
                self._last_measurement = measurement
                if self._history is not None:
                    try:
                        self._history.append(measurement, compensation)
                    except OSError as exc:
                        logger.error("Cannot log measurement: %s", exc)
        self._maybe_log_stats()

    def _maybe_log_stats(self) -> None:
        now = self._clock()
        if now < self._next_stats:
            return
        self._next_stats = now + self.config.host.stats_log_interval
        last = self._last_measurement
        logger.info(
            "cycles=%d failures=%d voc_index=%s",
            self._cycles,
            self._failures,
            last.voc_index if last is not None else "n/a",
        )

    def _shutdown(self) -> None:
        with self._running_lock:
            self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        while True:
            try:
                item = self._mailbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, _MeasureRequest):
                item.response.put(SensorStopped("SGP40 sampler is stopped"))
        if self._history is not None:
            self._history.close()
        self.transport.close()
        logger.info("Sensor %s stopped (cycles=%d failures=%d)", format_serial(self.serial_id), self._cycles, self._failures)


def start(
    config: Optional[SensorConfig] = None,
    *,
    engine: Optional[VocIndexEngine] = None,
    transport_factory: Callable[[str, int], Transport] = I2CTransport.open,
    clock: Callable[[], float] = time.monotonic,
) -> SGP40:
    """
    Open the bus, identify the sensor and start sampling.

    Raises DeviceNotFound when the bus cannot be opened or the sensor does not
    report its serial number. The engine defaults to the registered one,
    started on demand.
    """
    config = config or SensorConfig()
    logger.info("Starting on bus %s at address 0x%02X", config.bus_name, config.bus_address)
    try:
        transport = transport_factory(config.bus_name, config.bus_address)
    except DeviceNotFound:
        raise
    except (SGP40Error, OSError) as exc:
        raise DeviceNotFound(f"Cannot open {config.bus_name}: {exc}") from exc
    try:
        serial_id = transport.identity()
    except (SGP40Error, OSError) as exc:
        transport.close()
        raise DeviceNotFound(
            f"No SGP40 answering on {config.bus_name} at 0x{config.bus_address:02X}: {exc}"
        ) from exc

    if engine is None:
        engine = get_engine() or start_engine(config.engine)
    history = MeasurementLog(config.output_csv) if config.output_csv else None
    sensor = SGP40(transport, engine, config, serial_id=serial_id, clock=clock, history=history)
    sensor.start()
    return sensor
