from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from ..errors import BusError
from ..readings import RawSample
from .bus import BusPort
from .profiles import BMP180_TEMPERATURE_MS, OversamplingProfile

logger = logging.getLogger(__name__)

BMX280_REG_CTRL_HUM = 0xF2
BMX280_REG_CTRL_MEAS = 0xF4
BMX280_REG_DATA = 0xF7

BMP180_REG_CONTROL = 0xF4
BMP180_REG_DATA = 0xF6
BMP180_CMD_TEMPERATURE = 0x2E
BMP180_CMD_PRESSURE = 0x34

HTU21D_CMD_TEMPERATURE_NO_HOLD = 0xF3
HTU21D_CMD_HUMIDITY_NO_HOLD = 0xF5

TSL2561_CMD = 0x80
TSL2561_REG_TIMING = 0x01
TSL2561_REG_DATA0LOW = 0x0C

MCP9808_REG_TEMPERATURE = 0x05


class SequencerState(str, enum.Enum):
    IDLE = "idle"
    COMMAND_SENT = "command_sent"
    WAITING = "waiting"
    DATA_READ = "data_read"


@dataclass(frozen=True)
class Command:
    """A register write, or a bare command byte when ``register`` is ``None``."""

    register: Optional[int]
    value: int


@dataclass(frozen=True)
class Cycle:
    name: str
    commands: Tuple[Command, ...]
    wait_ms: float
    read_register: Optional[int]
    read_length: int


@dataclass(frozen=True)
class MeasurementPlan:
    cycles: Tuple[Cycle, ...]
    assemble: Callable[[Dict[str, bytes]], RawSample]


def crc8(data: bytes, poly: int = 0x31, init: int = 0x00) -> int:
    crc = init
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = (crc << 1) ^ poly
            else:
                crc <<= 1
            crc &= 0xFF
    return crc


def u20(msb: int, lsb: int, xlsb: int) -> int:
    return (msb << 12) | (lsb << 4) | (xlsb >> 4)


def u16_be(buffer: bytes, offset: int = 0) -> int:
    return (buffer[offset] << 8) | buffer[offset + 1]


def u16_le(buffer: bytes, offset: int = 0) -> int:
    return buffer[offset] | (buffer[offset + 1] << 8)


class MeasurementSequencer:
    """
    Drives a device through trigger, wait and read for every cycle of a plan.

    The conversion wait is a plain blocking sleep issued between bus
    transactions, so other devices on a shared ``LockedBus`` keep working.
    Any ``BusError`` returns the machine to ``IDLE`` and propagates unchanged.
    """

    def __init__(self, bus: BusPort, address: int, sleep: Callable[[float], None] = time.sleep):
        self.bus = bus
        self.address = address
        self._sleep = sleep
        self._state = SequencerState.IDLE

    @property
    def state(self) -> SequencerState:
        return self._state

    def _enter(self, state: SequencerState) -> None:
        if state is not self._state:
            logger.debug("0x%02X sequencer %s -> %s", self.address, self._state.value, state.value)
            self._state = state

    def run(self, plan: MeasurementPlan) -> RawSample:
        buffers: Dict[str, bytes] = {}
        try:
            for cycle in plan.cycles:
                buffers[cycle.name] = self._run_cycle(cycle)
            return plan.assemble(buffers)
        finally:
            self._enter(SequencerState.IDLE)

    def _run_cycle(self, cycle: Cycle) -> bytes:
        for command in cycle.commands:
            if command.register is None:
                self.bus.send_byte(self.address, command.value)
            else:
                self.bus.write_byte(self.address, command.register, command.value)
        self._enter(SequencerState.COMMAND_SENT)
        if cycle.wait_ms > 0:
            self._enter(SequencerState.WAITING)
            self._sleep(cycle.wait_ms / 1000.0)
        if cycle.read_register is None:
            buffer = self.bus.read_raw(self.address, cycle.read_length)
        else:
            buffer = self.bus.read_block(self.address, cycle.read_register, cycle.read_length)
        if len(buffer) < cycle.read_length:
            raise BusError(
                f"Short read from 0x{self.address:02X} in cycle '{cycle.name}': "
                f"{len(buffer)} of {cycle.read_length} bytes"
            )
        self._enter(SequencerState.DATA_READ)
        logger.debug("0x%02X %s data=%s", self.address, cycle.name, buffer.hex())
        self._enter(SequencerState.IDLE)
        return buffer


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def bme280_plan(
    t_os: OversamplingProfile,
    p_os: OversamplingProfile,
    h_os: OversamplingProfile,
    mode_bits: int,
    wait_ms: float,
) -> MeasurementPlan:
    ctrl_meas = (t_os.bits << 5) | (p_os.bits << 2) | mode_bits

    def assemble(buffers: Dict[str, bytes]) -> RawSample:
        data = buffers["measure"]
        return RawSample(
            adc_p=u20(data[0], data[1], data[2]),
            adc_t=u20(data[3], data[4], data[5]),
            adc_h=u16_be(data, 6),
        )

    cycle = Cycle(
        name="measure",
        commands=(
            Command(BMX280_REG_CTRL_HUM, h_os.bits),
            Command(BMX280_REG_CTRL_MEAS, ctrl_meas),
        ),
        wait_ms=wait_ms,
        read_register=BMX280_REG_DATA,
        read_length=8,
    )
    return MeasurementPlan(cycles=(cycle,), assemble=assemble)


def bmp280_plan(t_os: OversamplingProfile, p_os: OversamplingProfile, mode_bits: int, wait_ms: float) -> MeasurementPlan:
    ctrl_meas = (t_os.bits << 5) | (p_os.bits << 2) | mode_bits

    def assemble(buffers: Dict[str, bytes]) -> RawSample:
        data = buffers["measure"]
        return RawSample(adc_p=u20(data[0], data[1], data[2]), adc_t=u20(data[3], data[4], data[5]))

    cycle = Cycle("measure", (Command(BMX280_REG_CTRL_MEAS, ctrl_meas),), wait_ms, BMX280_REG_DATA, 6)
    return MeasurementPlan(cycles=(cycle,), assemble=assemble)


def bmp180_plan(oss: OversamplingProfile) -> MeasurementPlan:
    shift = 8 - oss.bits

    def assemble(buffers: Dict[str, bytes]) -> RawSample:
        ut = u16_be(buffers["temperature"])
        data = buffers["pressure"]
        up = ((data[0] << 16) | (data[1] << 8) | data[2]) >> shift
        return RawSample(adc_t=ut, adc_p=up)

    return MeasurementPlan(
        cycles=(
            Cycle(
                "temperature",
                (Command(BMP180_REG_CONTROL, BMP180_CMD_TEMPERATURE),),
                BMP180_TEMPERATURE_MS,
                BMP180_REG_DATA,
                2,
            ),
            Cycle(
                "pressure",
                (Command(BMP180_REG_CONTROL, BMP180_CMD_PRESSURE + (oss.bits << 6)),),
                oss.time_ms,
                BMP180_REG_DATA,
                3,
            ),
        ),
        assemble=assemble,
    )


def _htu21d_word(buffer: bytes, label: str, check_crc: bool) -> int:
    if check_crc:
        expected = crc8(buffer[:2])
        if expected != buffer[2]:
            raise BusError(f"HTU21D {label} CRC mismatch (read 0x{buffer[2]:02X}, computed 0x{expected:02X})")
    return u16_be(buffer) & 0xFFFC


def htu21d_plan(resolution: OversamplingProfile, check_crc: bool = True) -> MeasurementPlan:
    def assemble(buffers: Dict[str, bytes]) -> RawSample:
        return RawSample(
            adc_t=_htu21d_word(buffers["temperature"], "temperature", check_crc),
            adc_h=_htu21d_word(buffers["humidity"], "humidity", check_crc),
        )

    return MeasurementPlan(
        cycles=(
            Cycle("temperature", (Command(None, HTU21D_CMD_TEMPERATURE_NO_HOLD),), resolution.time_ms, None, 3),
            Cycle("humidity", (Command(None, HTU21D_CMD_HUMIDITY_NO_HOLD),), resolution.humidity_ms, None, 3),
        ),
        assemble=assemble,
    )


def tsl2561_plan(integration: OversamplingProfile, gain_bits: int) -> MeasurementPlan:
    def assemble(buffers: Dict[str, bytes]) -> RawSample:
        data = buffers["channels"]
        return RawSample(channel0=u16_le(data, 0), channel1=u16_le(data, 2))

    cycle = Cycle(
        "channels",
        (Command(TSL2561_CMD | TSL2561_REG_TIMING, gain_bits | integration.bits),),
        integration.time_ms,
        TSL2561_CMD | TSL2561_REG_DATA0LOW,
        4,
    )
    return MeasurementPlan(cycles=(cycle,), assemble=assemble)


def mcp9808_plan(resolution: OversamplingProfile) -> MeasurementPlan:
    # The sensor converts continuously; waiting one conversion period is enough.
    def assemble(buffers: Dict[str, bytes]) -> RawSample:
        return RawSample(adc_t=u16_be(buffers["temperature"]))

    cycle = Cycle("temperature", (), resolution.time_ms, MCP9808_REG_TEMPERATURE, 2)
    return MeasurementPlan(cycles=(cycle,), assemble=assemble)
