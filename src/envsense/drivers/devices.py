from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type

from ..derived import altitude, c_to_f, dew_point, m_to_ft, pa_to_inhg
from ..errors import BusError, ConfigError, DeviceNotReady, DomainError
from ..readings import CalibratedReading, Clock, CommandResult, DeviceStatus, RawSample, local_timestamp
from .bus import BusPort
from .coeff import (
    BMP180_LAYOUT,
    BMP280_LAYOUT,
    HUMIDITY_LAYOUTS,
    NO_CALIBRATION,
    CalibrationLayout,
    CalibrationStore,
    bme280_layout,
    read_device_id,
)
from .compensation import (
    BME280_COMPENSATION,
    BMP280_COMPENSATION,
    compensate_bmp180,
    htu21d_humidity,
    htu21d_temperature,
    mcp9808_temperature,
    tsl2561_lux,
)
from .config import DeviceConfig
from .profiles import (
    BMP180_OSS,
    BMX280_OVERSAMPLING,
    BMX280_POWER_MODES,
    BMX280_TP_OVERSAMPLING,
    HTU21D_RESOLUTION,
    MCP9808_RESOLUTION,
    TSL2561_GAIN,
    TSL2561_INTEGRATION,
    bmx280_conversion_ms,
    select,
)
from .sequencer import (
    TSL2561_CMD,
    TSL2561_REG_TIMING,
    MeasurementPlan,
    MeasurementSequencer,
    bme280_plan,
    bmp180_plan,
    bmp280_plan,
    htu21d_plan,
    mcp9808_plan,
    tsl2561_plan,
    u16_be,
)

logger = logging.getLogger(__name__)

BOSCH_REG_CHIP_ID = 0xD0

HTU21D_CMD_WRITE_USER_REGISTER = 0xE6
HTU21D_DISABLE_OTP_RELOAD = 0x02

TSL2561_REG_CONTROL = 0x00
TSL2561_REG_ID = 0x0A
TSL2561_POWER_UP = 0x03
TSL2561_PARTS: Dict[int, str] = {
    0x00: "TSL2560CS",
    0x10: "TSL2561CS",
    0x40: "TSL2560T/FN/CL",
    0x50: "TSL2561T/FN/CL",
}

MCP9808_REG_MANUFACTURER_ID = 0x06
MCP9808_REG_DEVICE_ID = 0x07
MCP9808_REG_RESOLUTION = 0x08
MCP9808_MANUFACTURER_ID = 0x0054


@dataclass
class DeviceState:
    address: int
    calibration: CalibrationStore
    status: DeviceStatus = DeviceStatus.INITIALIZING
    last_error: Optional[str] = None
    device_id: Optional[int] = None
    part: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.status is DeviceStatus.READY


def _int_option(options: Mapping[str, Any], key: str, default: int) -> int:
    value = options.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"Option '{key}' must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"Option '{key}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Option '{key}' must be an integer, got {value!r}") from exc


def _bool_option(options: Mapping[str, Any], key: str, default: bool) -> bool:
    value = options.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ConfigError(f"Option '{key}' must be true or false, got {value!r}")


def _str_option(options: Mapping[str, Any], key: str, default: str) -> str:
    return str(options.get(key, default)).strip().lower()


class DeviceDriver:
    """
    Shared lifecycle for one sensor at one address.

    Subclasses validate their options in ``_configure`` (raising
    ``ConfigError`` from the constructor), perform chip specific setup in
    ``_setup`` and turn a ``RawSample`` into a reading in ``_compensate``.
    """

    family: str = ""
    addresses: Tuple[int, ...] = ()

    def __init__(
        self,
        bus: BusPort,
        config: DeviceConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Clock] = None,
    ) -> None:
        if config.address not in self.addresses:
            choices = ", ".join(f"0x{addr:02X}" for addr in self.addresses)
            raise ConfigError(f"{config.name}: address 0x{config.address:02X} not valid for {self.family} ({choices})")
        self.bus = bus
        self.config = config
        self.name = config.name
        self.topic = config.topic or self.family
        self.model = self.family
        self._clock = clock
        self._log = logging.getLogger(f"{__name__}.{config.name}")
        if config.debug:
            self._log.setLevel(logging.DEBUG)
        self.plan = self._configure(config.options)
        self.state = DeviceState(address=config.address, calibration=CalibrationStore(self._layout()))
        self.sequencer = MeasurementSequencer(bus, config.address, sleep=sleep)

    @property
    def address(self) -> int:
        return self.config.address

    @property
    def resolution(self) -> Optional[str]:
        return None

    def _configure(self, options: Mapping[str, Any]) -> MeasurementPlan:
        raise NotImplementedError

    def _layout(self) -> CalibrationLayout:
        return NO_CALIBRATION

    def _setup(self) -> None:
        """Chip specific writes and identity checks run before calibration is read."""

    def _compensate(self, raw: RawSample) -> CalibratedReading:
        raise NotImplementedError

    def initialize(self) -> bool:
        self.state.status = DeviceStatus.INITIALIZING
        self.state.last_error = None
        try:
            self._setup()
            self.state.calibration.load(self.bus, self.address)
        except BusError as exc:
            self.state.status = DeviceStatus.ERROR
            self.state.last_error = str(exc)
            self._log.error("%s initialisation failed: %s", self.name, exc)
            return False
        self.state.status = DeviceStatus.READY
        self._log.info("%s (%s @ 0x%02X) ready", self.name, self.model, self.address)
        return True

    def measure(self) -> CalibratedReading:
        if not self.state.ready:
            raise DeviceNotReady(f"{self.name} device is not ready - skipping measurement.")
        raw = self.sequencer.run(self.plan)
        self._log.debug("%s raw %s", self.name, raw)
        return self._compensate(raw)

    def handle(self, command: Any) -> CommandResult:
        token = "" if command is None else str(command).strip()
        if not self.state.ready:
            message = f"{self.name} device is not ready - skipping measurement."
            return CommandResult(self.topic, self.state.status, message=message)
        if token != "measure":
            return CommandResult(self.topic, self.state.status, message=f"{token} unrecognized command.")
        try:
            reading = self.measure()
        except (BusError, DomainError) as exc:
            self.state.last_error = str(exc)
            self._log.warning("%s measurement failed: %s", self.name, exc)
            return CommandResult(self.topic, self.state.status, message=f"{self.name} measurement failed: {exc}")
        return CommandResult(self.topic, self.state.status, reading=reading)

    def _reading(
        self,
        temperature_c: Optional[float] = None,
        pressure_pa: Optional[float] = None,
        humidity: Optional[float] = None,
        **extra: Any,
    ) -> CalibratedReading:
        values: Dict[str, Any] = dict(extra)
        if temperature_c is not None:
            values["temperature_c"] = temperature_c
            values["temperature_f"] = c_to_f(temperature_c)
        if pressure_pa is not None:
            values["pressure_pa"] = pressure_pa
            values["pressure_inhg"] = pa_to_inhg(pressure_pa)
            try:
                altitude_m = altitude(pressure_pa)
            except DomainError as exc:
                self._log.warning("%s altitude unavailable: %s", self.name, exc)
            else:
                values["altitude_m"] = altitude_m
                values["altitude_ft"] = m_to_ft(altitude_m)
        if humidity is not None:
            values["humidity"] = humidity
            if temperature_c is not None:
                try:
                    dew_c = dew_point(temperature_c, humidity)
                except DomainError as exc:
                    self._log.warning("%s dew point unavailable: %s", self.name, exc)
                else:
                    values["dew_point_c"] = dew_c
                    values["dew_point_f"] = c_to_f(dew_c)
        values.setdefault("resolution", self.resolution)
        return CalibratedReading(
            name=self.name,
            family=self.model,
            timestamp=local_timestamp(self._clock),
            **values,
        )

    def _check_chip_id(self, expected: int, attempts: int = 1) -> None:
        chip_id = read_device_id(self.bus, self.address, BOSCH_REG_CHIP_ID, attempts)
        self.state.device_id = chip_id
        if chip_id != expected:
            self._log.warning(
                "%s: unexpected chip ID 0x%02X at 0x%02X (expected 0x%02X)",
                self.name,
                chip_id,
                self.address,
                expected,
            )


class Bmp280Driver(DeviceDriver):
    family = "bmp280"
    addresses = (0x76, 0x77)
    chip_id = 0x58

    def _configure(self, options: Mapping[str, Any]) -> MeasurementPlan:
        self.t_os = select(BMX280_TP_OVERSAMPLING, _int_option(options, "t_oversampling", 1), "t_oversampling")
        self.p_os = select(BMX280_TP_OVERSAMPLING, _int_option(options, "p_oversampling", 1), "p_oversampling")
        self.power_mode = _str_option(options, "power_mode", "forced")
        self.mode_bits = select(BMX280_POWER_MODES, self.power_mode, "power_mode")
        self.arithmetic = _str_option(options, "arithmetic", "float")
        self._compensator = select(BMP280_COMPENSATION, self.arithmetic, "arithmetic")
        self.wait_ms = bmx280_conversion_ms(self.t_os, self.p_os)
        return bmp280_plan(self.t_os, self.p_os, self.mode_bits, self.wait_ms)

    @property
    def resolution(self) -> Optional[str]:
        return f"T {self.t_os.precision}, P {self.p_os.precision}"

    def _layout(self) -> CalibrationLayout:
        return BMP280_LAYOUT

    def _setup(self) -> None:
        self._check_chip_id(self.chip_id)

    def _compensate(self, raw: RawSample) -> CalibratedReading:
        temperature, pressure = self._compensator(raw.adc_t, raw.adc_p, self.state.calibration.coefficients)
        return self._reading(temperature_c=temperature, pressure_pa=pressure)


class Bme280Driver(Bmp280Driver):
    family = "bme280"
    chip_id = 0x60

    def _configure(self, options: Mapping[str, Any]) -> MeasurementPlan:
        self.t_os = select(BMX280_TP_OVERSAMPLING, _int_option(options, "t_oversampling", 1), "t_oversampling")
        self.p_os = select(BMX280_TP_OVERSAMPLING, _int_option(options, "p_oversampling", 1), "p_oversampling")
        self.h_os = select(BMX280_OVERSAMPLING, _int_option(options, "h_oversampling", 1), "h_oversampling")
        self.power_mode = _str_option(options, "power_mode", "forced")
        self.mode_bits = select(BMX280_POWER_MODES, self.power_mode, "power_mode")
        self.arithmetic = _str_option(options, "arithmetic", "float")
        self._compensator = select(BME280_COMPENSATION, self.arithmetic, "arithmetic")
        self.humidity_layout = _str_option(options, "humidity_layout", "datasheet")
        if self.humidity_layout not in HUMIDITY_LAYOUTS:
            raise ConfigError(f"Unsupported humidity_layout '{self.humidity_layout}' (expected one of {HUMIDITY_LAYOUTS})")
        self.wait_ms = bmx280_conversion_ms(self.t_os, self.p_os, self.h_os)
        return bme280_plan(self.t_os, self.p_os, self.h_os, self.mode_bits, self.wait_ms)

    @property
    def resolution(self) -> Optional[str]:
        return f"T {self.t_os.precision}, P {self.p_os.precision}, H {self.h_os.precision}"

    def _layout(self) -> CalibrationLayout:
        return bme280_layout(self.humidity_layout)

    def _compensate(self, raw: RawSample) -> CalibratedReading:
        cal = self.state.calibration.coefficients
        humidity: Optional[float] = None
        if self.h_os.key:
            temperature, pressure, humidity = self._compensator(raw.adc_t, raw.adc_p, raw.adc_h, cal)
        else:
            temperature, pressure = BMP280_COMPENSATION[self.arithmetic](raw.adc_t, raw.adc_p, cal)
        return self._reading(temperature_c=temperature, pressure_pa=pressure, humidity=humidity)


class Bmp180Driver(DeviceDriver):
    family = "bmp180"
    addresses = (0x77,)
    chip_id = 0x55
    # The BMP180 can miss the first identity read right after power-on.
    id_attempts = 2

    def _configure(self, options: Mapping[str, Any]) -> MeasurementPlan:
        self.oss = select(BMP180_OSS, _int_option(options, "oss", 3), "oss")
        return bmp180_plan(self.oss)

    @property
    def resolution(self) -> Optional[str]:
        return self.oss.precision

    def _layout(self) -> CalibrationLayout:
        return BMP180_LAYOUT

    def _setup(self) -> None:
        self._check_chip_id(self.chip_id, attempts=self.id_attempts)

    def _compensate(self, raw: RawSample) -> CalibratedReading:
        temperature, pressure = compensate_bmp180(raw.adc_t, raw.adc_p, self.oss.bits, self.state.calibration.coefficients)
        return self._reading(temperature_c=temperature, pressure_pa=pressure)


class Htu21dDriver(DeviceDriver):
    family = "htu21d"
    addresses = (0x40,)
    variants = ("htu21d", "htu21df")

    def _configure(self, options: Mapping[str, Any]) -> MeasurementPlan:
        self.mres = select(HTU21D_RESOLUTION, _int_option(options, "resolution", 0), "resolution")
        self.check_crc = _bool_option(options, "check_crc", True)
        variant = _str_option(options, "variant", "htu21d")
        if variant not in self.variants:
            raise ConfigError(f"Unsupported variant '{variant}' (expected one of {self.variants})")
        self.model = variant
        return htu21d_plan(self.mres, check_crc=self.check_crc)

    @property
    def resolution(self) -> Optional[str]:
        return self.mres.precision

    def _setup(self) -> None:
        self.bus.write_byte(
            self.address,
            HTU21D_CMD_WRITE_USER_REGISTER,
            self.mres.bits | HTU21D_DISABLE_OTP_RELOAD,
        )

    def _compensate(self, raw: RawSample) -> CalibratedReading:
        return self._reading(
            temperature_c=htu21d_temperature(raw.adc_t),
            humidity=htu21d_humidity(raw.adc_h),
        )


class Tsl2561Driver(DeviceDriver):
    family = "tsl2561"
    addresses = (0x29, 0x39, 0x49)

    def _configure(self, options: Mapping[str, Any]) -> MeasurementPlan:
        self.integration = select(TSL2561_INTEGRATION, _int_option(options, "integration", 2), "integration")
        self.gain = _str_option(options, "gain", "high")
        self.gain_bits = select(TSL2561_GAIN, self.gain, "gain")
        self.revision: Optional[int] = None
        return tsl2561_plan(self.integration, self.gain_bits)

    @property
    def resolution(self) -> Optional[str]:
        return f"{self.integration.precision}, {self.gain} gain"

    def _setup(self) -> None:
        self.bus.write_byte(self.address, TSL2561_CMD | TSL2561_REG_CONTROL, TSL2561_POWER_UP)
        control = self.bus.read_byte(self.address, TSL2561_CMD | TSL2561_REG_CONTROL) & 0x03
        if control != TSL2561_POWER_UP:
            raise BusError(f"{self.name}: power-up not acknowledged (control=0b{control:02b})")
        device_id = read_device_id(self.bus, self.address, TSL2561_CMD | TSL2561_REG_ID)
        part = TSL2561_PARTS.get(device_id & 0xF0)
        if part is None:
            raise BusError(f"{self.name}: unknown device ID 0x{device_id:02X}")
        self.state.device_id = device_id
        self.state.part = part
        self.revision = device_id & 0x0F
        self._log.debug("%s part=%s revision=%d", self.name, part, self.revision)
        self.bus.write_byte(self.address, TSL2561_CMD | TSL2561_REG_TIMING, self.gain_bits | self.integration.bits)

    def _compensate(self, raw: RawSample) -> CalibratedReading:
        lux = tsl2561_lux(raw.channel0, raw.channel1, self.integration.key, self.gain)
        return self._reading(lux=float(lux), channel0=raw.channel0, channel1=raw.channel1)


class Mcp9808Driver(DeviceDriver):
    family = "mcp9808"
    addresses = tuple(range(0x18, 0x20))

    def _configure(self, options: Mapping[str, Any]) -> MeasurementPlan:
        self.mres = select(MCP9808_RESOLUTION, _int_option(options, "resolution", 3), "resolution")
        return mcp9808_plan(self.mres)

    @property
    def resolution(self) -> Optional[str]:
        return self.mres.precision

    def _setup(self) -> None:
        manufacturer = u16_be(self.bus.read_block(self.address, MCP9808_REG_MANUFACTURER_ID, 2))
        if manufacturer != MCP9808_MANUFACTURER_ID:
            self._log.warning(
                "%s: unexpected manufacturer ID 0x%04X (expected 0x%04X)", self.name, manufacturer, MCP9808_MANUFACTURER_ID
            )
        self.state.device_id = u16_be(self.bus.read_block(self.address, MCP9808_REG_DEVICE_ID, 2))
        self.bus.write_byte(self.address, MCP9808_REG_RESOLUTION, self.mres.bits)

    def _compensate(self, raw: RawSample) -> CalibratedReading:
        temperature = mcp9808_temperature(raw.adc_t >> 8, raw.adc_t & 0xFF)
        return self._reading(temperature_c=temperature, resolution_f=self.mres.precision_f)


DRIVERS: Dict[str, Type[DeviceDriver]] = {
    "bme280": Bme280Driver,
    "bmp280": Bmp280Driver,
    "bmp180": Bmp180Driver,
    "htu21d": Htu21dDriver,
    "tsl2561": Tsl2561Driver,
    "mcp9808": Mcp9808Driver,
}


def create_driver(
    bus: BusPort,
    config: DeviceConfig,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Optional[Clock] = None,
) -> DeviceDriver:
    try:
        driver_cls = DRIVERS[config.family]
    except KeyError:
        raise ConfigError(f"Unknown device family '{config.family}'") from None
    logger.debug("Creating %s driver '%s' at 0x%02X", config.family, config.name, config.address)
    return driver_cls(bus, config, sleep=sleep, clock=clock)
