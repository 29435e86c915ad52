from __future__ import annotations

import logging
import os
import signal
import threading
import time
from pathlib import Path

import pytest

from sgp40.config import EngineSettings
from sgp40.engine import EngineState, VocIndexEngine, get_engine, start_engine
from sgp40.errors import EngineComputeError, EngineCrashed, EngineError, EngineTerminated, EngineTimeout
from sgp40.models import AlgorithmSnapshot, TuningParams


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_process_returns_voc_index(engine: VocIndexEngine) -> None:
    voc_index = engine.process(30000)
    assert isinstance(voc_index, int)
    assert 1 <= voc_index <= 500
    assert engine.state is EngineState.READY


def test_err_reply_is_not_fatal(engine: VocIndexEngine) -> None:
    with pytest.raises(EngineComputeError) as excinfo:
        engine.process(0)
    assert excinfo.value.reason == "sensor not ready"
    assert engine.state is EngineState.READY
    assert engine.process(12000) == 120


def test_states_round_trip(engine: VocIndexEngine) -> None:
    assert engine.set_states(AlgorithmSnapshot(mean=100, std=50)) is None
    assert engine.get_states() == AlgorithmSnapshot(mean=100, std=50)


def test_tuning_params_ack(engine: VocIndexEngine) -> None:
    assert engine.set_tuning_params(TuningParams()) == "tuning updated"


def test_raw_sample_validated_before_sending(engine: VocIndexEngine) -> None:
    with pytest.raises(ValueError):
        engine.process(0x10000)
    assert engine.process(100) == 1


def test_diagnostic_lines_are_ignored(make_settings) -> None:
    eng = VocIndexEngine(make_settings("chatty"))
    eng.start()
    try:
        assert eng.process(30000) == 300
        assert eng.get_states() == AlgorithmSnapshot(mean=0, std=0)
    finally:
        eng.stop()


def test_missing_reply_times_out_and_terminates(make_settings) -> None:
    eng = VocIndexEngine(make_settings("silent", timeout_sec=0.3))
    eng.start()
    started = time.monotonic()
    with pytest.raises(EngineTimeout):
        eng.process(30000)
    assert time.monotonic() - started < 2.0
    eng.join(timeout=3.0)
    assert eng.state is EngineState.TERMINATED
    assert eng.returncode is not None
    started = time.monotonic()
    with pytest.raises(EngineTerminated):
        eng.process(30000)
    assert time.monotonic() - started < 0.5


def test_unrecognized_replies_end_in_timeout(make_settings) -> None:
    eng = VocIndexEngine(make_settings("garbage", timeout_sec=0.3))
    eng.start()
    try:
        with pytest.raises(EngineTimeout):
            eng.get_states()
    finally:
        eng.stop()
    assert eng.state is EngineState.TERMINATED


def test_exit_during_call_is_reported_immediately(make_settings) -> None:
    eng = VocIndexEngine(make_settings("exit-on-process", timeout_sec=5.0))
    eng.start()
    started = time.monotonic()
    with pytest.raises(EngineCrashed) as excinfo:
        eng.process(30000)
    assert excinfo.value.returncode == 3
    assert time.monotonic() - started < 3.0
    eng.join(timeout=3.0)
    assert eng.state is EngineState.TERMINATED


def test_external_kill_terminates_engine(engine: VocIndexEngine) -> None:
    assert engine.pid is not None
    os.kill(engine.pid, signal.SIGKILL)
    assert _wait_for(lambda: engine.state is EngineState.TERMINATED)
    assert "died with status" in (engine.termination_reason or "")
    with pytest.raises(EngineTerminated):
        engine.process(30000)


def test_start_engine_restarts_running_instance(make_settings) -> None:
    first = start_engine(make_settings(), name="restart-test")
    first.set_states(AlgorithmSnapshot(mean=100, std=50))
    second = start_engine(make_settings(), name="restart-test")
    try:
        assert first is not second
        assert first.state is EngineState.TERMINATED
        assert first.returncode is not None
        assert get_engine("restart-test") is second
        # fresh program, fresh learning state
        assert second.get_states() == AlgorithmSnapshot(mean=0, std=0)
    finally:
        second.stop()
    assert get_engine("restart-test") is None


def test_missing_program_fails_to_start(tmp_path: Path) -> None:
    eng = VocIndexEngine(EngineSettings(executable=tmp_path / "missing"))
    with pytest.raises(EngineTerminated):
        eng.start()
    assert eng.state is EngineState.TERMINATED


def test_call_before_start_fails(make_settings) -> None:
    eng = VocIndexEngine(make_settings())
    with pytest.raises(EngineTerminated):
        eng.process(30000)


def test_long_diagnostic_line_is_split_and_skipped(make_settings, caplog) -> None:
    caplog.set_level(logging.DEBUG, logger="sgp40.engine")
    eng = VocIndexEngine(make_settings("long-diagnostic"))
    eng.start()
    try:
        assert eng.process(30000) == 300
        assert eng.process(12000) == 120
        assert eng.state is EngineState.READY
    finally:
        eng.stop()
    fragments = [
        record.args[1]
        for record in caplog.records
        if record.msg == "[%s] %s" and str(record.args[1]).startswith("#")
    ]
    # two replies, each preceded by 3000 bytes of noise in lines of at most 1024
    assert len(fragments) == 6
    assert max(len(fragment) for fragment in fragments) == 1024
    assert sum(len(fragment) for fragment in fragments) == 6000


def test_stop_does_not_wait_behind_queued_calls(make_settings) -> None:
    eng = VocIndexEngine(make_settings("silent", timeout_sec=5.0))
    eng.start()
    errors: list = []

    def call() -> None:
        try:
            eng.process(30000)
        except EngineError as exc:
            errors.append(exc)

    callers = [threading.Thread(target=call) for _ in range(2)]
    for caller in callers:
        caller.start()
    time.sleep(0.2)
    started = time.monotonic()
    eng.stop()
    assert time.monotonic() - started < 1.5
    for caller in callers:
        caller.join(timeout=2.0)
    assert len(errors) == 2
    assert all(isinstance(exc, EngineTerminated) for exc in errors)
    assert eng.state is EngineState.TERMINATED
    assert eng.returncode is not None
