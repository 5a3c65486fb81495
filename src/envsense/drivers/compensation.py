"""
Manufacturer compensation formulas turning raw ADC counts into physical units.

All functions are pure: they take raw counts and an immutable calibration
record and keep no state between calls.
"""
from __future__ import annotations

import logging
from typing import Tuple

from ..errors import DomainError
from .coeff import Bme280Calibration, Bmp180Calibration, Bmp280Calibration

logger = logging.getLogger(__name__)

# TSL2561 fixed point scaling (datasheet application note).
LUX_SCALE = 14
RATIO_SCALE = 9
CH_SCALE = 10
CHSCALE_TINT0 = 0x7517  # 322/11 * 2^CH_SCALE
CHSCALE_TINT1 = 0x0FE7  # 322/81 * 2^CH_SCALE

# T, FN and CL package coefficients: (ratio limit K, B, M).
TSL2561_T_BREAKPOINTS: Tuple[Tuple[int, int, int], ...] = (
    (0x0040, 0x01F2, 0x01BE),
    (0x0080, 0x0214, 0x02D1),
    (0x00C0, 0x023F, 0x037B),
    (0x0100, 0x0270, 0x03FE),
    (0x0138, 0x016F, 0x01FC),
    (0x019A, 0x00D2, 0x00FB),
    (0x029A, 0x0018, 0x0012),
    (0x029A, 0x0000, 0x0000),
)


# ---------------------------------------------------------------------------
# BME280 / BMP280
# ---------------------------------------------------------------------------


def bmx280_temperature(adc_t: int, cal: Bmp280Calibration) -> Tuple[float, float]:
    """Return ``(t_fine, temperature_c)`` using the double precision formula."""

    var1 = (adc_t / 16384.0 - cal.dig_T1 / 1024.0) * cal.dig_T2
    delta = adc_t / 131072.0 - cal.dig_T1 / 8192.0
    var2 = delta * delta * cal.dig_T3
    t_fine = var1 + var2
    return t_fine, t_fine / 5120.0


def bmx280_pressure(adc_p: int, t_fine: float, cal: Bmp280Calibration) -> float:
    """Pressure in Pa. Returns 0.0 when the calibration would divide by zero."""

    var1 = t_fine / 2.0 - 64000.0
    var2 = var1 * var1 * cal.dig_P6 / 32768.0
    var2 = var2 + var1 * cal.dig_P5 * 2.0
    var2 = var2 / 4.0 + cal.dig_P4 * 65536.0
    var1 = (cal.dig_P3 * var1 * var1 / 524288.0 + cal.dig_P2 * var1) / 524288.0
    var1 = (1.0 + var1 / 32768.0) * cal.dig_P1
    if var1 == 0.0:
        logger.debug("Pressure compensation skipped: var1 == 0")
        return 0.0
    pressure = 1048576.0 - adc_p
    pressure = (pressure - var2 / 4096.0) * 6250.0 / var1
    var1 = cal.dig_P9 * pressure * pressure / 2147483648.0
    var2 = pressure * cal.dig_P8 / 32768.0
    return pressure + (var1 + var2 + cal.dig_P7) / 16.0


def bme280_humidity(adc_h: int, t_fine: float, cal: Bme280Calibration) -> float:
    """Relative humidity in percent, clamped to [0, 100]."""

    var_h = t_fine - 76800.0
    var_h = (adc_h - (cal.dig_H4 * 64.0 + cal.dig_H5 / 16384.0 * var_h)) * (
        cal.dig_H2
        / 65536.0
        * (1.0 + cal.dig_H6 / 67108864.0 * var_h * (1.0 + cal.dig_H3 / 67108864.0 * var_h))
    )
    var_h = var_h * (1.0 - cal.dig_H1 * var_h / 524288.0)
    return min(max(var_h, 0.0), 100.0)


def compensate_bmp280(adc_t: int, adc_p: int, cal: Bmp280Calibration) -> Tuple[float, float]:
    t_fine, temperature = bmx280_temperature(adc_t, cal)
    pressure = bmx280_pressure(adc_p, t_fine, cal)
    logger.debug("bmp280 t_fine=%.2f T=%.2f P=%.2f", t_fine, temperature, pressure)
    return temperature, pressure


def compensate_bme280(adc_t: int, adc_p: int, adc_h: int, cal: Bme280Calibration) -> Tuple[float, float, float]:
    t_fine, temperature = bmx280_temperature(adc_t, cal)
    pressure = bmx280_pressure(adc_p, t_fine, cal)
    humidity = bme280_humidity(adc_h, t_fine, cal)
    logger.debug("bme280 t_fine=%.2f T=%.2f P=%.2f H=%.2f", t_fine, temperature, pressure, humidity)
    return temperature, pressure, humidity


def _div_trunc(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def bmx280_temperature_int(adc_t: int, cal: Bmp280Calibration) -> Tuple[int, int]:
    """Fixed-point reference: ``(t_fine, temperature)`` with temperature in 0.01 degC."""

    var1 = (((adc_t >> 3) - (cal.dig_T1 << 1)) * cal.dig_T2) >> 11
    delta = (adc_t >> 4) - cal.dig_T1
    var2 = (((delta * delta) >> 12) * cal.dig_T3) >> 14
    t_fine = var1 + var2
    return t_fine, (t_fine * 5 + 128) >> 8


def bmx280_pressure_int64(adc_p: int, t_fine: int, cal: Bmp280Calibration) -> int:
    """64-bit fixed-point reference; the result is Pa in Q24.8 (divide by 256)."""

    var1 = t_fine - 128000
    var2 = var1 * var1 * cal.dig_P6
    var2 = var2 + ((var1 * cal.dig_P5) << 17)
    var2 = var2 + (cal.dig_P4 << 35)
    var1 = ((var1 * var1 * cal.dig_P3) >> 8) + ((var1 * cal.dig_P2) << 12)
    var1 = (((1 << 47) + var1) * cal.dig_P1) >> 33
    if var1 == 0:
        return 0
    pressure = 1048576 - adc_p
    pressure = _div_trunc(((pressure << 31) - var2) * 3125, var1)
    var1 = (cal.dig_P9 * (pressure >> 13) * (pressure >> 13)) >> 25
    var2 = (cal.dig_P8 * pressure) >> 19
    return ((pressure + var1 + var2) >> 8) + (cal.dig_P7 << 4)


def compensate_bmp280_fixed(adc_t: int, adc_p: int, cal: Bmp280Calibration) -> Tuple[float, float]:
    t_fine, temperature = bmx280_temperature_int(adc_t, cal)
    pressure = bmx280_pressure_int64(adc_p, t_fine, cal)
    logger.debug("bmp280 fixed t_fine=%d T=%d P=%d", t_fine, temperature, pressure)
    return temperature / 100.0, pressure / 256.0


def compensate_bme280_fixed(adc_t: int, adc_p: int, adc_h: int, cal: Bme280Calibration) -> Tuple[float, float, float]:
    # Humidity keeps the double formula, fed with the integer t_fine.
    t_fine, temperature = bmx280_temperature_int(adc_t, cal)
    pressure = bmx280_pressure_int64(adc_p, t_fine, cal)
    humidity = bme280_humidity(adc_h, float(t_fine), cal)
    return temperature / 100.0, pressure / 256.0, humidity


BMP280_COMPENSATION = {"float": compensate_bmp280, "fixed": compensate_bmp280_fixed}
BME280_COMPENSATION = {"float": compensate_bme280, "fixed": compensate_bme280_fixed}


# ---------------------------------------------------------------------------
# BMP180
# ---------------------------------------------------------------------------


def compensate_bmp180(ut: int, up: int, oss: int, cal: Bmp180Calibration) -> Tuple[float, float]:
    """
    Datasheet integer algorithm. Returns ``(temperature_c, pressure_pa)``.

    B4 and B7 are unsigned 32-bit quantities on the device; they are masked
    explicitly so that the large-count branch matches the reference.
    """

    x1 = ((ut - cal.ac6) * cal.ac5) >> 15
    denominator = x1 + cal.md
    if denominator == 0:
        raise DomainError("BMP180 temperature compensation divides by zero (X1 + MD == 0)")
    x2 = (cal.mc << 11) // denominator
    b5 = x1 + x2
    temperature = (b5 + 8) >> 4

    b6 = b5 - 4000
    x1 = (cal.b2 * ((b6 * b6) >> 12)) >> 11
    x2 = (cal.ac2 * b6) >> 11
    x3 = x1 + x2
    b3 = (((cal.ac1 * 4 + x3) << oss) + 2) // 4
    x1 = (cal.ac3 * b6) >> 13
    x2 = (cal.b1 * ((b6 * b6) >> 12)) >> 16
    x3 = ((x1 + x2) + 2) >> 2
    b4 = ((cal.ac4 * ((x3 + 32768) & 0xFFFFFFFF)) >> 15) & 0xFFFFFFFF
    if b4 == 0:
        logger.debug("bmp180 B4 == 0, reporting zero pressure")
        return temperature / 10.0, 0.0
    b7 = (((up - b3) & 0xFFFFFFFF) * (50000 >> oss)) & 0xFFFFFFFF
    if b7 < 0x80000000:
        pressure = (b7 * 2) // b4
    else:
        pressure = (b7 // b4) * 2
    x1 = (pressure >> 8) * (pressure >> 8)
    x1 = (x1 * 3038) >> 16
    x2 = (-7357 * pressure) >> 16
    pressure = pressure + ((x1 + x2 + 3791) >> 4)
    logger.debug("bmp180 B5=%d B3=%d B4=%d B7=%d T=%d p=%d", b5, b3, b4, b7, temperature, pressure)
    return temperature / 10.0, float(pressure)


# ---------------------------------------------------------------------------
# HTU21D
# ---------------------------------------------------------------------------


def htu21d_temperature(raw: int) -> float:
    return -46.85 + 175.72 * (raw & 0xFFFC) / 65536.0


def htu21d_humidity(raw: int) -> float:
    humidity = -6.0 + 125.0 * (raw & 0xFFFC) / 65536.0
    return min(max(humidity, 0.0), 100.0)


# ---------------------------------------------------------------------------
# TSL2561
# ---------------------------------------------------------------------------


def tsl2561_lux(ch0: int, ch1: int, integration: int, gain: str = "high") -> int:
    """Approximate illuminance in lux for the T/FN/CL package."""

    if integration == 0:
        ch_scale = CHSCALE_TINT0
    elif integration == 1:
        ch_scale = CHSCALE_TINT1
    else:
        ch_scale = 1 << CH_SCALE
    if gain != "high":
        ch_scale <<= 4

    channel0 = (ch0 * ch_scale) >> CH_SCALE
    channel1 = (ch1 * ch_scale) >> CH_SCALE

    ratio1 = 0
    if channel0 != 0:
        ratio1 = (channel1 << (RATIO_SCALE + 1)) // channel0
    ratio = (ratio1 + 1) >> 1

    b = m = 0
    for limit, b_coeff, m_coeff in TSL2561_T_BREAKPOINTS:
        if ratio <= limit:
            b, m = b_coeff, m_coeff
            break

    temp = channel0 * b - channel1 * m
    if temp < 0:
        temp = 0
    temp += 1 << (LUX_SCALE - 1)
    return temp >> LUX_SCALE


# ---------------------------------------------------------------------------
# MCP9808
# ---------------------------------------------------------------------------


def mcp9808_temperature(msb: int, lsb: int) -> float:
    """Ambient temperature register: 13-bit two's complement, 1/16 degC per count."""

    raw = ((msb & 0x1F) << 8) | lsb
    if raw & 0x1000:
        raw -= 0x2000
    return raw / 16.0
