"""Command line interface for the sgp40 package."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional

import typer

from .config import SensorConfig, load_config
from .engine import VocIndexEngine, start_engine
from .errors import DeviceNotFound, EngineError, SGP40Error
from .history import load_history, load_snapshot, save_snapshot, summarize, write_summary
from .sensor import SGP40, format_serial
from .sensor import start as start_sensor
from .transport import I2CTransport

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, context_settings={"help_option_names": ["-h", "--help"]})


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)."),
) -> None:
    """SGP40 VOC index host utilities."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_config(
    config_path: Optional[Path],
    override: Optional[List[str]],
    *,
    bus_name: Optional[str] = None,
    bus_address: Optional[str] = None,
    humidity: Optional[float] = None,
    temperature: Optional[float] = None,
    engine_path: Optional[Path] = None,
) -> SensorConfig:
    overrides: List[str] = []
    if bus_name is not None:
        overrides.append(f"bus_name={bus_name}")
    if bus_address is not None:
        overrides.append(f"bus_address={bus_address}")
    if humidity is not None:
        overrides.append(f"humidity_rh={humidity}")
    if temperature is not None:
        overrides.append(f"temperature_c={temperature}")
    if engine_path is not None:
        overrides.append(f"engine.executable={engine_path}")
    try:
        return load_config(config_path, overrides + list(override or []))
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _prepare_engine(engine: VocIndexEngine, cfg: SensorConfig) -> None:
    if cfg.tuning is not None:
        try:
            ack = engine.set_tuning_params(cfg.tuning)
        except EngineError as exc:
            logger.warning("Tuning parameters rejected, using defaults: %s", exc)
        else:
            logger.info("Applied tuning parameters %s (%s)", cfg.tuning.as_tuple(), ack or "OK")
    if cfg.states_file is not None and cfg.states_file.exists():
        snapshot = load_snapshot(cfg.states_file)
        try:
            engine.set_states(snapshot)
        except EngineError as exc:
            logger.warning("Could not restore algorithm states from %s: %s", cfg.states_file, exc)
        else:
            logger.info("Restored algorithm states mean=%d std=%d", snapshot.mean, snapshot.std)


def _save_states(sensor: SGP40, cfg: SensorConfig) -> None:
    if cfg.states_file is None:
        return
    try:
        snapshot = sensor.get_states()
    except EngineError as exc:
        logger.warning("Could not save algorithm states: %s", exc)
        return
    save_snapshot(cfg.states_file, snapshot)
    logger.info("Saved algorithm states to %s", cfg.states_file)


def _poll(sensor: SGP40, cfg: SensorConfig, duration: float) -> None:
    deadline = time.monotonic() + duration if duration > 0 else None
    last_timestamp = None
    while deadline is None or time.monotonic() < deadline:
        time.sleep(cfg.host.polling_interval_sec)
        measurement = sensor.measure()
        if measurement is None or measurement.timestamp_ms == last_timestamp:
            continue
        last_timestamp = measurement.timestamp_ms
        typer.echo(f"{measurement.timestamp_ms} voc_index={measurement.voc_index}")


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to sensor config JSON."),
    bus_name: Optional[str] = typer.Option(None, "--bus", help="I2C bus, e.g. i2c-1."),
    bus_address: Optional[str] = typer.Option(None, "--address", help="Sensor address, e.g. 0x59."),
    humidity: Optional[float] = typer.Option(None, "--humidity", help="Initial relative humidity (%)."),
    temperature: Optional[float] = typer.Option(None, "--temperature", help="Initial temperature (°C)."),
    engine_path: Optional[Path] = typer.Option(None, "--engine", help="VOC algorithm program."),
    duration: float = typer.Option(0.0, "--duration", help="Stop after N seconds (0=until Ctrl+C)."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set tuning.learning_time_hours=24 --set output_csv=voc.csv",
    ),
) -> None:
    """Sample the sensor and print VOC index readings."""

    cfg = _build_config(
        config_path,
        override,
        bus_name=bus_name,
        bus_address=bus_address,
        humidity=humidity,
        temperature=temperature,
        engine_path=engine_path,
    )
    try:
        engine = start_engine(cfg.engine)
    except EngineError as exc:
        typer.echo(f"Cannot start VOC algorithm: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    try:
        _prepare_engine(engine, cfg)
        try:
            sensor = start_sensor(cfg, engine=engine)
        except DeviceNotFound as exc:
            typer.echo(f"Device not found: {exc}", err=True)
            raise typer.Exit(code=1) from exc
        try:
            _poll(sensor, cfg, duration)
        except KeyboardInterrupt:
            logger.info("Stopping sensor (Ctrl+C)")
        finally:
            _save_states(sensor, cfg)
            sensor.stop()
    finally:
        engine.stop()


@app.command()
def probe(
    bus_name: str = typer.Option("i2c-1", "--bus", help="I2C bus, e.g. i2c-1."),
    bus_address: str = typer.Option("0x59", "--address", help="Sensor address."),
) -> None:
    """Print the serial number reported by the sensor."""

    try:
        address = int(bus_address, 0)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid address '{bus_address}'", param_hint="--address") from exc
    try:
        transport = I2CTransport.open(bus_name, address)
        try:
            serial_id = transport.identity()
        finally:
            transport.close()
    except SGP40Error as exc:
        typer.echo(f"Probe failed: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"SGP40 {format_serial(serial_id)} on {bus_name} at 0x{address:02X}")


@app.command()
def process(
    samples: List[int] = typer.Argument(..., help="Raw sensor values (0..65535)."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to sensor config JSON."),
    engine_path: Optional[Path] = typer.Option(None, "--engine", help="VOC algorithm program."),
    override: Optional[List[str]] = typer.Option(None, "--set", help="Override config keys."),
) -> None:
    """Feed raw values to the VOC algorithm and print the resulting indices."""

    cfg = _build_config(config_path, override, engine_path=engine_path)
    try:
        engine = start_engine(cfg.engine)
    except EngineError as exc:
        typer.echo(f"Cannot start VOC algorithm: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    try:
        _prepare_engine(engine, cfg)
        for sraw in samples:
            try:
                typer.echo(f"{sraw} voc_index={engine.process(sraw)}")
            except (EngineError, ValueError) as exc:
                typer.echo(f"{sraw} error: {exc}", err=True)
    finally:
        engine.stop()


@app.command()
def report(
    input_path: Path = typer.Option(..., "--in", help="Measurement CSV written by 'run'.", exists=True),
    report_dir: Path = typer.Option(Path("voc_report"), "--out", help="Output directory."),
) -> None:
    """Summarize a measurement log."""

    df = load_history(input_path)
    try:
        summary = summarize(df)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--in") from exc
    write_summary(summary, report_dir)
    try:
        from .plotting import plot_history

        plot_history(df, report_dir)
    except RuntimeError as exc:
        typer.echo(f"[warning] plotting skipped: {exc}")
    typer.echo(
        f"{summary.samples} samples over {summary.span_sec:.0f}s: "
        f"mean={summary.mean:.1f} p95={summary.p95:.1f} max={summary.maximum}"
    )
    typer.echo(f"Report written to {report_dir}")


def run_cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run_cli()
