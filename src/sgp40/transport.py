from __future__ import annotations

import logging
import time
from typing import List, Sequence, Union

from smbus2 import SMBus, i2c_msg

from .errors import DeviceNotFound, TransportReadError

logger = logging.getLogger(__name__)

CMD_MEASURE_RAW = (0x26, 0x0F)
CMD_SERIAL_ID = (0x36, 0x82)
MEASURE_DELAY_SEC = 0.030
SERIAL_ID_DELAY_SEC = 0.001
WORD_LEN = 2


def crc8(data: Sequence[int], poly: int = 0x31, init: int = 0xFF) -> int:
    """Sensirion CRC-8 over a data word."""
    crc = init
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ poly) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
    return crc


def humidity_to_ticks(humidity_rh: float) -> int:
    humidity_rh = min(max(float(humidity_rh), 0.0), 100.0)
    return int(humidity_rh * 65535 / 100 + 0.5)


def temperature_to_ticks(temperature_c: float) -> int:
    temperature_c = min(max(float(temperature_c), -45.0), 130.0)
    return int((temperature_c + 45) * 65535 / 175)


def pack_word(value: int) -> List[int]:
    word = [(value >> 8) & 0xFF, value & 0xFF]
    return word + [crc8(word)]


def unpack_words(data: Sequence[int]) -> List[int]:
    if len(data) % (WORD_LEN + 1) != 0:
        raise TransportReadError(f"Unexpected reply length {len(data)}")
    words: List[int] = []
    for idx in range(0, len(data), WORD_LEN + 1):
        word = data[idx : idx + WORD_LEN]
        expected = data[idx + WORD_LEN]
        actual = crc8(word)
        if actual != expected:
            raise TransportReadError(f"CRC mismatch (expected=0x{expected:02X}, actual=0x{actual:02X})")
        words.append((word[0] << 8) | word[1])
    return words


def measure_raw_command(humidity_rh: float, temperature_c: float) -> List[int]:
    return [
        *CMD_MEASURE_RAW,
        *pack_word(humidity_to_ticks(humidity_rh)),
        *pack_word(temperature_to_ticks(temperature_c)),
    ]


def resolve_bus(bus_name: Union[str, int]) -> Union[str, int]:
    """Map "i2c-1", "/dev/i2c-1" or "1" to something SMBus can open."""
    if isinstance(bus_name, int):
        return bus_name
    name = bus_name.strip()
    if name.isdigit():
        return int(name)
    if name.startswith("/"):
        return name
    return f"/dev/{name}"


class Transport:
    """What the sensor needs from the bus. Concrete transports override all of it."""

    def read_compensated_sample(self, humidity_rh: float, temperature_c: float) -> int:
        raise NotImplementedError

    def identity(self) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass


class I2CTransport(Transport):
    def __init__(self, bus: SMBus, bus_address: int, bus_name: str = ""):
        self.bus = bus
        self.bus_address = bus_address
        self.bus_name = bus_name

    @classmethod
    def open(cls, bus_name: str, bus_address: int) -> "I2CTransport":
        try:
            bus = SMBus(resolve_bus(bus_name))
        except (OSError, ValueError) as exc:
            raise DeviceNotFound(f"Cannot open I2C bus {bus_name}: {exc}") from exc
        logger.debug("Opened I2C bus %s for address 0x%02X", bus_name, bus_address)
        return cls(bus, bus_address, bus_name)

    def read_compensated_sample(self, humidity_rh: float, temperature_c: float) -> int:
        words = self._command(measure_raw_command(humidity_rh, temperature_c), 1, MEASURE_DELAY_SEC)
        return words[0]

    def identity(self) -> int:
        words = self._command(list(CMD_SERIAL_ID), 3, SERIAL_ID_DELAY_SEC)
        return (words[0] << 32) | (words[1] << 16) | words[2]

    def close(self) -> None:
        try:
            self.bus.close()
        except OSError:
            logger.debug("Closing I2C bus %s failed", self.bus_name, exc_info=True)

    def _command(self, payload: List[int], words: int, delay: float) -> List[int]:
        try:
            self.bus.i2c_rdwr(i2c_msg.write(self.bus_address, payload))
            time.sleep(delay)
            read = i2c_msg.read(self.bus_address, words * (WORD_LEN + 1))
            self.bus.i2c_rdwr(read)
        except OSError as exc:
            raise TransportReadError(f"I2C transfer with 0x{self.bus_address:02X} failed: {exc}") from exc
        return unpack_words(list(read))
