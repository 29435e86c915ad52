from __future__ import annotations

import sys
from pathlib import Path

import pytest

from sgp40.config import EngineSettings
from sgp40.engine import VocIndexEngine

FAKE_ENGINE = Path(__file__).with_name("fake_voc_engine.py")


def fake_engine_settings(mode: str = "normal", timeout_sec: float = 2.0) -> EngineSettings:
    return EngineSettings(
        executable=Path(sys.executable),
        args=[str(FAKE_ENGINE), mode],
        timeout_sec=timeout_sec,
    )


@pytest.fixture
def make_settings():
    return fake_engine_settings


@pytest.fixture
def engine():
    eng = VocIndexEngine(fake_engine_settings())
    eng.start()
    try:
        yield eng
    finally:
        eng.stop()
