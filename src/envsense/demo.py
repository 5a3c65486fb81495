"""Simulated I2C bus seeded with datasheet example data, for demos and tests."""
from __future__ import annotations

import logging
import struct
from typing import Callable, Dict, List, Optional, Tuple

from .drivers.config import HostConfig, config_from_mapping
from .drivers.runner import SensorHost
from .errors import BusError
from .readings import CommandResult

logger = logging.getLogger(__name__)

# BMP280 datasheet section 3.12 worked example.
BMP280_EXAMPLE_COEFFS = (27504, 26435, -1000, 36477, -10685, 3024, 2855, 140, -7, 15500, -14600, 6000)
BMP280_EXAMPLE_DATA = bytes([0x65, 0x5A, 0xC0, 0x7E, 0xED, 0x00])  # adc_P=415148, adc_T=519888

# BMP180 datasheet worked example (oss = 0).
BMP180_EXAMPLE_COEFFS = (408, -72, -14383, 32741, 32757, 23153, 6190, 4, -32768, -8711, 2868)
BMP180_EXAMPLE_UT = bytes([0x6C, 0xFA])  # 27898
BMP180_EXAMPLE_UP = bytes([0x5D, 0x23, 0x00])  # 23843

# H2 = 16384, H4 = 10, everything else 0: RH = (adc_H - 640) / 4.
BME280_EXAMPLE_HUMIDITY_BLOCK = bytes([0x00, 0x40, 0x00, 0x00, 0x0A, 0x00, 0x00])
BME280_EXAMPLE_ADC_H = bytes([0x03, 0x48])  # 840 -> 50 %RH

# HTU21D datasheet CRC examples: data word followed by its checksum.
HTU21D_EXAMPLE_TEMPERATURE = bytes([0x68, 0x3A, 0x7C])
HTU21D_EXAMPLE_HUMIDITY = bytes([0x4E, 0x85, 0x6B])

DEMO_DEVICES: Dict[int, Dict[str, Dict[str, object]]] = {
    1: {
        "outdoor": {"family": "bme280", "address": "0x76"},
        "barometer": {"family": "bmp280", "address": "0x77"},
        "humidity": {"family": "htu21d", "address": "0x40"},
        "light": {"family": "tsl2561", "address": "0x39"},
        "board": {"family": "mcp9808", "address": "0x18"},
    },
    # The BMP180 address is fixed at 0x77, so it sits on its own bus.
    0: {
        "legacy": {"family": "bmp180", "address": "0x77", "oss": 0},
    },
}


class SimulatedBus:
    """
    Register-level BusPort over per-address register files.

    Register writes are stored and may trigger a canned conversion that
    loads new data into the register file. Devices with pointer-addressed
    word registers (the MCP9808) keep them in a separate map so that
    neighbouring pointers do not overlap. Bare command bytes queue a
    response for the next raw read. Addresses without a register file
    behave like an absent device and raise ``BusError``.
    """

    def __init__(self) -> None:
        self.registers: Dict[int, Dict[int, int]] = {}
        self.transactions: List[Tuple[str, int, int]] = []
        self._triggers: Dict[Tuple[int, int, Optional[int]], Dict[int, bytes]] = {}
        self._commands: Dict[Tuple[int, int], bytes] = {}
        self._pending: Dict[int, bytes] = {}
        self.words: Dict[int, Dict[int, bytes]] = {}
        self.closed = False

    def add_device(self, address: int) -> None:
        self.registers.setdefault(address, {})

    def load(self, address: int, register: int, data: bytes) -> None:
        regs = self.registers.setdefault(address, {})
        for offset, value in enumerate(data):
            regs[register + offset] = value

    def load_word(self, address: int, pointer: int, data: bytes) -> None:
        self.add_device(address)
        self.words.setdefault(address, {})[pointer] = bytes(data)

    def on_write(self, address: int, register: int, updates: Dict[int, bytes], value: Optional[int] = None) -> None:
        self._triggers[(address, register, value)] = updates

    def on_command(self, address: int, command: int, response: bytes) -> None:
        self.add_device(address)
        self._commands[(address, command)] = response

    def _device(self, address: int) -> Dict[int, int]:
        if self.closed:
            raise BusError("Simulated bus is closed")
        try:
            return self.registers[address]
        except KeyError:
            raise BusError(f"No device acknowledged at 0x{address:02X}") from None

    def read_byte(self, address: int, register: int) -> int:
        regs = self._device(address)
        self.transactions.append(("read_byte", address, register))
        return regs.get(register, 0)

    def write_byte(self, address: int, register: int, value: int) -> None:
        regs = self._device(address)
        self.transactions.append(("write_byte", address, register))
        regs[register] = value & 0xFF
        updates = self._triggers.get((address, register, value), self._triggers.get((address, register, None)))
        for target, data in (updates or {}).items():
            self.load(address, target, data)

    def read_block(self, address: int, register: int, length: int) -> bytes:
        regs = self._device(address)
        self.transactions.append(("read_block", address, register))
        word = self.words.get(address, {}).get(register)
        if word is not None:
            return word[:length]
        return bytes(regs.get(register + offset, 0) for offset in range(length))

    def send_byte(self, address: int, value: int) -> None:
        self._device(address)
        self.transactions.append(("send_byte", address, value))
        self._pending[address] = self._commands.get((address, value), b"")

    def read_raw(self, address: int, length: int) -> bytes:
        self._device(address)
        self.transactions.append(("read_raw", address, length))
        data = self._pending.pop(address, b"")
        if len(data) < length:
            raise BusError(f"0x{address:02X} has no pending data to read")
        return data[:length]

    def close(self) -> None:
        self.closed = True


def _seed_bmx280(bus: SimulatedBus, address: int, chip_id: int, data: bytes) -> None:
    bus.load(address, 0xD0, bytes([chip_id]))
    bus.load(address, 0x88, struct.pack("<HhhHhhhhhhhh", *BMP280_EXAMPLE_COEFFS))
    bus.on_write(address, 0xF4, {0xF7: data})


def build_demo_bus(number: int = 1) -> SimulatedBus:
    bus = SimulatedBus()
    if number == 0:
        bus.load(0x77, 0xD0, bytes([0x55]))
        bus.load(0x77, 0xAA, struct.pack(">hhhHHHhhhhh", *BMP180_EXAMPLE_COEFFS))
        bus.on_write(0x77, 0xF4, {0xF6: BMP180_EXAMPLE_UT}, value=0x2E)
        bus.on_write(0x77, 0xF4, {0xF6: BMP180_EXAMPLE_UP}, value=0x34)
        return bus

    _seed_bmx280(bus, 0x76, 0x60, BMP280_EXAMPLE_DATA + BME280_EXAMPLE_ADC_H)
    bus.load(0x76, 0xE1, BME280_EXAMPLE_HUMIDITY_BLOCK)
    _seed_bmx280(bus, 0x77, 0x58, BMP280_EXAMPLE_DATA)

    bus.on_command(0x40, 0xF3, HTU21D_EXAMPLE_TEMPERATURE)
    bus.on_command(0x40, 0xF5, HTU21D_EXAMPLE_HUMIDITY)

    bus.load(0x39, 0x8A, bytes([0x50]))  # TSL2561T, revision 0
    bus.load(0x39, 0x8C, bytes([0xE8, 0x03, 0xC8, 0x00]))  # ch0=1000, ch1=200

    bus.load_word(0x18, 0x05, bytes([0xC1, 0x94]))  # alert flags set, 25.25 degC
    bus.load_word(0x18, 0x06, bytes([0x00, 0x54]))
    bus.load_word(0x18, 0x07, bytes([0x04, 0x00]))
    return bus


def demo_config(number: int) -> HostConfig:
    return config_from_mapping({"bus": number, "devices": DEMO_DEVICES[number]})


def run_demo(sleep: Callable[[float], None] = lambda _seconds: None) -> List[CommandResult]:
    """Measure every simulated device once and return the command results."""

    results: List[CommandResult] = []
    for number in sorted(DEMO_DEVICES, reverse=True):
        host = SensorHost(demo_config(number), bus_factory=build_demo_bus, sleep=sleep)
        try:
            host.initialize()
            results.extend(host.dispatch("measure"))
        finally:
            host.close()
        logger.info("Demo bus %d: processed=%d failures=%d", number, host.processed, host.failures)
    return results
