from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from envsense.drivers.coeff import Bme280Calibration, Bmp180Calibration, Bmp280Calibration
from envsense.drivers.compensation import (
    bme280_humidity,
    bmx280_pressure,
    bmx280_pressure_int64,
    bmx280_temperature,
    bmx280_temperature_int,
    compensate_bme280,
    compensate_bmp180,
    compensate_bmp280,
    htu21d_humidity,
    htu21d_temperature,
    mcp9808_temperature,
    tsl2561_lux,
)
from envsense.errors import DomainError

BMP280_COEFFS = (27504, 26435, -1000, 36477, -10685, 3024, 2855, 140, -7, 15500, -14600, 6000)
ADC_T = 519888
ADC_P = 415148


def _bmp280_cal() -> Bmp280Calibration:
    return Bmp280Calibration(*BMP280_COEFFS)


def _bme280_cal() -> Bme280Calibration:
    # RH = (adc_H - 640) / 4 regardless of temperature.
    return Bme280Calibration(*BMP280_COEFFS, dig_H1=0, dig_H2=16384, dig_H3=0, dig_H4=10, dig_H5=0, dig_H6=0)


def _bmp180_cal() -> Bmp180Calibration:
    return Bmp180Calibration(
        ac1=408, ac2=-72, ac3=-14383, ac4=32741, ac5=32757, ac6=23153, b1=6190, b2=4, mb=-32768, mc=-8711, md=2868
    )


def test_bmx280_temperature_double_example() -> None:
    t_fine, temperature = bmx280_temperature(ADC_T, _bmp280_cal())
    assert np.isclose(t_fine, 128422.29, atol=0.05)
    assert np.isclose(temperature, 25.08, atol=0.01)


def test_bmx280_pressure_double_example() -> None:
    t_fine, _ = bmx280_temperature(ADC_T, _bmp280_cal())
    pressure = bmx280_pressure(ADC_P, t_fine, _bmp280_cal())
    assert np.isclose(pressure, 100653.27, atol=1.0)


def test_compensate_bmp280_shares_t_fine() -> None:
    temperature, pressure = compensate_bmp280(ADC_T, ADC_P, _bmp280_cal())
    assert np.isclose(temperature, 25.08, atol=0.01)
    assert np.isclose(pressure, 100653.27, atol=1.0)


def test_pressure_zero_when_p1_is_zero() -> None:
    cal = dataclasses.replace(_bmp280_cal(), dig_P1=0)
    t_fine, _ = bmx280_temperature(ADC_T, cal)
    assert bmx280_pressure(ADC_P, t_fine, cal) == 0.0
    t_fine_int, _ = bmx280_temperature_int(ADC_T, cal)
    assert bmx280_pressure_int64(ADC_P, t_fine_int, cal) == 0


def test_bmx280_fixed_point_reference() -> None:
    t_fine, temperature = bmx280_temperature_int(ADC_T, _bmp280_cal())
    assert t_fine == 128422
    assert temperature == 2508
    pressure_q24_8 = bmx280_pressure_int64(ADC_P, t_fine, _bmp280_cal())
    assert np.isclose(pressure_q24_8 / 256.0, 100653.27, atol=1.0)


def test_bme280_humidity_and_clamps() -> None:
    cal = _bme280_cal()
    t_fine, _ = bmx280_temperature(ADC_T, cal)
    assert np.isclose(bme280_humidity(840, t_fine, cal), 50.0)
    assert bme280_humidity(1060, t_fine, cal) == 100.0
    assert bme280_humidity(628, t_fine, cal) == 0.0


def test_compensate_bme280_returns_all_three() -> None:
    temperature, pressure, humidity = compensate_bme280(ADC_T, ADC_P, 840, _bme280_cal())
    assert np.isclose(temperature, 25.08, atol=0.01)
    assert np.isclose(pressure, 100653.27, atol=1.0)
    assert np.isclose(humidity, 50.0)


def test_bmp180_datasheet_example() -> None:
    temperature, pressure = compensate_bmp180(27898, 23843, 0, _bmp180_cal())
    assert temperature == 15.0
    assert pressure == 69964.0


def test_bmp180_unsigned_b7_branch() -> None:
    # UP below B3 wraps around in unsigned 32-bit arithmetic.
    temperature, pressure = compensate_bmp180(27898, 0, 0, _bmp180_cal())
    assert temperature == 15.0
    assert pressure == 256808.0


def test_bmp180_zero_divisor_raises() -> None:
    cal = dataclasses.replace(_bmp180_cal(), md=0)
    with pytest.raises(DomainError):
        compensate_bmp180(cal.ac6, 23843, 0, cal)


def test_bmp180_zero_b4_reports_zero_pressure() -> None:
    cal = dataclasses.replace(_bmp180_cal(), ac4=0)
    temperature, pressure = compensate_bmp180(27898, 23843, 0, cal)
    assert temperature == 15.0
    assert pressure == 0.0


def test_htu21d_conversions() -> None:
    assert np.isclose(htu21d_temperature(0x683A), 24.69, atol=0.01)
    assert np.isclose(htu21d_humidity(0x4E85), 32.34, atol=0.01)
    assert htu21d_humidity(0xFFFF) == 100.0
    assert htu21d_humidity(0x0000) == 0.0


def test_tsl2561_lux_examples() -> None:
    assert tsl2561_lux(1000, 200, 2, "high") == 24
    assert tsl2561_lux(100, 50, 0, "low") == 323
    assert tsl2561_lux(100, 200, 2, "high") == 0
    assert tsl2561_lux(0, 0, 1, "high") == 0


def test_mcp9808_temperature_sign_and_flags() -> None:
    assert mcp9808_temperature(0x01, 0x94) == 25.25
    assert mcp9808_temperature(0xC1, 0x94) == 25.25
    assert mcp9808_temperature(0x1F, 0xF0) == -1.0
    assert mcp9808_temperature(0x1E, 0x00) == -32.0
