from __future__ import annotations

from typing import List

import pytest

import sgp40.transport as transport_mod
from sgp40.errors import DeviceNotFound, TransportReadError
from sgp40.transport import (
    I2CTransport,
    crc8,
    humidity_to_ticks,
    measure_raw_command,
    pack_word,
    resolve_bus,
    temperature_to_ticks,
    unpack_words,
)


class FakeRead(list):
    def __init__(self, addr: int, length: int):
        super().__init__()
        self.addr = addr
        self.length = length


class FakeI2cMsg:
    @staticmethod
    def write(addr: int, data: List[int]):
        return ("write", addr, list(data))

    @staticmethod
    def read(addr: int, length: int) -> FakeRead:
        return FakeRead(addr, length)


class FakeBus:
    def __init__(self, replies: List[List[int]]):
        self.replies = replies
        self.writes: list = []
        self.closed = False
        self.fail = False

    def i2c_rdwr(self, *msgs) -> None:
        if self.fail:
            raise OSError(121, "Remote I/O error")
        for msg in msgs:
            if isinstance(msg, FakeRead):
                msg.extend(self.replies.pop(0)[: msg.length])
            else:
                self.writes.append(msg)

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def fake_i2c(monkeypatch):
    monkeypatch.setattr(transport_mod, "i2c_msg", FakeI2cMsg)


def test_crc8_reference_values() -> None:
    assert crc8([0xBE, 0xEF]) == 0x92
    assert pack_word(0x8000) == [0x80, 0x00, 0xA2]
    assert pack_word(0x6666) == [0x66, 0x66, 0x93]


def test_compensation_ticks() -> None:
    assert humidity_to_ticks(50) == 0x8000
    assert humidity_to_ticks(0) == 0x0000
    assert humidity_to_ticks(100) == 0xFFFF
    assert humidity_to_ticks(120) == 0xFFFF
    assert temperature_to_ticks(25) == 0x6666
    assert temperature_to_ticks(-45) == 0x0000
    assert temperature_to_ticks(130) == 0xFFFF


def test_measure_raw_command_default_compensation() -> None:
    assert measure_raw_command(50, 25) == [0x26, 0x0F, 0x80, 0x00, 0xA2, 0x66, 0x66, 0x93]


def test_unpack_words_checks_crc() -> None:
    assert unpack_words(pack_word(0x1234) + pack_word(0xBEEF)) == [0x1234, 0xBEEF]
    with pytest.raises(TransportReadError):
        unpack_words([0xBE, 0xEF, 0x00])
    with pytest.raises(TransportReadError):
        unpack_words([0xBE, 0xEF])


def test_read_compensated_sample() -> None:
    bus = FakeBus([pack_word(30000)])
    transport = I2CTransport(bus, 0x59)
    assert transport.read_compensated_sample(50, 25) == 30000
    assert bus.writes == [("write", 0x59, [0x26, 0x0F, 0x80, 0x00, 0xA2, 0x66, 0x66, 0x93])]


def test_identity_combines_three_words() -> None:
    bus = FakeBus([pack_word(0x0000) + pack_word(0x0123) + pack_word(0x4567)])
    transport = I2CTransport(bus, 0x59)
    assert transport.identity() == 0x01234567
    assert bus.writes == [("write", 0x59, [0x36, 0x82])]


def test_bus_errors_become_read_errors() -> None:
    bus = FakeBus([])
    bus.fail = True
    transport = I2CTransport(bus, 0x59)
    with pytest.raises(TransportReadError):
        transport.read_compensated_sample(50, 25)
    transport.close()
    assert bus.closed


def test_open_missing_bus(monkeypatch) -> None:
    def fake_smbus(bus):
        raise FileNotFoundError(2, "No such file or directory", bus)

    monkeypatch.setattr(transport_mod, "SMBus", fake_smbus)
    with pytest.raises(DeviceNotFound):
        I2CTransport.open("i2c-9", 0x59)


def test_open_resolves_bus_name(monkeypatch) -> None:
    opened = []

    def fake_smbus(bus):
        opened.append(bus)
        return FakeBus([])

    monkeypatch.setattr(transport_mod, "SMBus", fake_smbus)
    transport = I2CTransport.open("i2c-1", 0x59)
    assert opened == ["/dev/i2c-1"]
    assert transport.bus_address == 0x59


def test_resolve_bus() -> None:
    assert resolve_bus("i2c-1") == "/dev/i2c-1"
    assert resolve_bus("/dev/i2c-3") == "/dev/i2c-3"
    assert resolve_bus("2") == 2
    assert resolve_bus(4) == 4
