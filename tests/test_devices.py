from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

import numpy as np
import pytest

from envsense.demo import SimulatedBus, build_demo_bus
from envsense.drivers.config import DeviceConfig, device_config_from_mapping
from envsense.drivers.devices import (
    Bme280Driver,
    Bmp180Driver,
    Htu21dDriver,
    Mcp9808Driver,
    Tsl2561Driver,
    create_driver,
)
from envsense.errors import BusError, ConfigError, DeviceNotReady
from envsense.readings import DeviceStatus


def _no_sleep(_seconds: float) -> None:
    return None


def _config(name: str, family: str, address: Any, **options: Any) -> DeviceConfig:
    data: Dict[str, Any] = {"family": family, "address": address}
    data.update(options)
    return device_config_from_mapping(name, data)


def _driver(bus, name: str, family: str, address: Any, **options: Any):
    return create_driver(bus, _config(name, family, address, **options), sleep=_no_sleep)


@pytest.mark.parametrize(
    "family,address,options",
    [
        ("bme280", "0x76", {"t_oversampling": 3}),
        ("bme280", "0x76", {"power_mode": "turbo"}),
        ("bme280", "0x76", {"humidity_layout": "packed"}),
        ("bme280", "0x40", {}),
        ("bmp280", "0x77", {"p_oversampling": 0}),
        ("bmp180", "0x77", {"oss": 4}),
        ("bmp180", "0x77", {"oss": 1.5}),
        ("bmp280", "0x77", {"arithmetic": "decimal"}),
        ("htu21d", "0x40", {"resolution": 7}),
        ("htu21d", "0x40", {"variant": "sht21"}),
        ("htu21d", "0x40", {"check_crc": "maybe"}),
        ("tsl2561", "0x39", {"gain": "medium"}),
        ("tsl2561", "0x39", {"integration": 3}),
        ("mcp9808", "0x30", {}),
        ("mcp9808", "0x18", {"resolution": "fine"}),
    ],
)
def test_invalid_options_rejected_at_construction(family: str, address: str, options: Dict[str, Any]) -> None:
    bus = SimulatedBus()
    with pytest.raises(ConfigError):
        _driver(bus, "dev", family, address, **options)
    assert bus.transactions == []


def test_create_driver_unknown_family() -> None:
    with pytest.raises(ConfigError):
        create_driver(SimulatedBus(), DeviceConfig(name="x", family="sht31", address=0x44))


def test_bme280_measure_on_demo_bus() -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "outdoor", "bme280", "0x76")
    assert isinstance(driver, Bme280Driver)
    assert driver.initialize()
    assert driver.state.status is DeviceStatus.READY
    assert driver.state.device_id == 0x60

    reading = driver.measure()
    assert np.isclose(reading.temperature_c, 25.08, atol=0.01)
    assert np.isclose(reading.pressure_pa, 100653.27, atol=1.0)
    assert np.isclose(reading.humidity, 50.0)
    assert reading.dew_point_c is not None and reading.dew_point_c < reading.temperature_c
    assert np.isclose(reading.altitude_m, 56.07, atol=0.2)
    assert reading.family == "bme280"
    assert reading.resolution == "T x1, P x1, H x1"
    # ctrl_hum written before ctrl_meas, forced mode with x1/x1
    assert bus.registers[0x76][0xF2] == 0x01
    assert bus.registers[0x76][0xF4] == 0x25


def test_unexpected_chip_id_only_warns(caplog: pytest.LogCaptureFixture) -> None:
    bus = build_demo_bus()
    bus.load(0x76, 0xD0, bytes([0x58]))
    driver = _driver(bus, "outdoor", "bme280", "0x76")
    with caplog.at_level(logging.WARNING):
        assert driver.initialize()
    assert "unexpected chip ID" in caplog.text


def test_ready_gate_blocks_bus_traffic() -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "outdoor", "bme280", "0x76")
    with pytest.raises(DeviceNotReady):
        driver.measure()
    result = driver.handle("measure")
    assert not result.ok
    assert result.status is DeviceStatus.INITIALIZING
    assert result.message == "outdoor device is not ready - skipping measurement."
    assert bus.transactions == []


def test_failed_initialise_sets_error_status() -> None:
    bus = SimulatedBus()
    driver = _driver(bus, "missing", "bmp280", "0x76")
    assert driver.initialize() is False
    assert driver.state.status is DeviceStatus.ERROR
    assert "0x76" in driver.state.last_error
    result = driver.handle("measure")
    assert result.status is DeviceStatus.ERROR
    assert result.outputs() == [
        {"topic": "bmp280", "payload": "missing device is not ready - skipping measurement."}
    ]


def test_unrecognized_command() -> None:
    driver = _driver(build_demo_bus(), "board", "mcp9808", "0x18")
    driver.initialize()
    result = driver.handle("reset")
    assert result.message == "reset unrecognized command."
    assert result.status is DeviceStatus.READY


def test_measurement_failure_is_reported_not_raised() -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "board", "mcp9808", "0x18")
    assert driver.initialize()
    del bus.registers[0x18]
    result = driver.handle("measure")
    assert not result.ok
    assert "measurement failed" in result.message
    assert driver.state.ready
    with pytest.raises(BusError):
        driver.measure()


def test_consecutive_measurements_are_independent() -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "barometer", "bmp280", "0x77")
    assert driver.initialize()
    first = driver.measure()
    # New conversion data: adc_T = 0x80000 (524288), pressure unchanged.
    bus.on_write(0x77, 0xF4, {0xF7: bytes([0x65, 0x5A, 0xC0, 0x80, 0x00, 0x00])})
    second = driver.measure()
    assert second.temperature_c > first.temperature_c
    assert np.isclose(first.temperature_c, 25.08, atol=0.01)
    calibration_reads = [t for t in bus.transactions if t == ("read_block", 0x77, 0x88)]
    assert len(calibration_reads) == 1


def test_bmp180_retries_identity_read() -> None:
    class SlowStartBus(SimulatedBus):
        def __init__(self) -> None:
            super().__init__()
            self.id_failures = 1

        def read_byte(self, address: int, register: int) -> int:
            if register == 0xD0 and self.id_failures:
                self.id_failures -= 1
                raise BusError("NACK during power-on")
            return super().read_byte(address, register)

    bus = SlowStartBus()
    reference = build_demo_bus(0)
    bus.registers = reference.registers
    bus._triggers = reference._triggers
    driver = _driver(bus, "legacy", "bmp180", "0x77", oss=0)
    assert isinstance(driver, Bmp180Driver)
    assert driver.initialize()
    reading = driver.measure()
    assert reading.temperature_c == 15.0
    assert reading.pressure_pa == 69964.0
    assert reading.resolution == "ultra low power"


def test_htu21d_user_register_and_reading() -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "humidity", "htu21d", "0x40", resolution=3, variant="htu21df")
    assert isinstance(driver, Htu21dDriver)
    assert driver.initialize()
    assert bus.registers[0x40][0xE6] == 0x83
    reading = driver.measure()
    assert np.isclose(reading.temperature_c, 24.69, atol=0.01)
    assert np.isclose(reading.humidity, 32.34, atol=0.01)
    assert reading.dew_point_c is not None
    assert reading.family == "htu21df"
    assert reading.reported_state()["state"]["reported"]["name"] == "htu21df"


def test_htu21d_zero_humidity_leaves_dew_point_unset() -> None:
    bus = build_demo_bus()
    bus.on_command(0x40, 0xF5, bytes([0x00, 0x00, 0x00]))
    driver = _driver(bus, "humidity", "htu21d", "0x40")
    assert driver.initialize()
    reading = driver.measure()
    assert reading.humidity == 0.0
    assert reading.dew_point_c is None
    assert "dewPoint" not in reading.reported_state()["state"]["reported"]


def test_tsl2561_identity_and_lux() -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "light", "tsl2561", "0x39")
    assert isinstance(driver, Tsl2561Driver)
    assert driver.initialize()
    assert driver.state.part == "TSL2561T/FN/CL"
    assert driver.revision == 0
    assert bus.registers[0x39][0x81] == 0x12
    reading = driver.measure()
    assert reading.lux == 24.0
    assert (reading.channel0, reading.channel1) == (1000, 200)


def test_tsl2561_unknown_part_fails_initialise() -> None:
    bus = build_demo_bus()
    bus.load(0x39, 0x8A, bytes([0x25]))
    driver = _driver(bus, "light", "tsl2561", "0x39")
    assert driver.initialize() is False
    assert "unknown device ID" in driver.state.last_error


def test_mcp9808_reading_and_resolution_labels() -> None:
    bus = build_demo_bus()
    stamp = datetime(2024, 1, 2, 3, 4, 5)
    driver = create_driver(bus, _config("board", "mcp9808", 0x18), sleep=_no_sleep, clock=lambda: stamp)
    assert isinstance(driver, Mcp9808Driver)
    assert driver.initialize()
    assert driver.state.device_id == 0x0400
    assert bus.registers[0x18][0x08] == 3
    result = driver.handle("measure")
    assert result.ok
    payload, reported = [message["payload"] for message in result.outputs()]
    assert payload["temperature_c"] == 25.25
    assert np.isclose(payload["temperature_f"], 77.45)
    assert payload["resolution"] == "+/- 0.0625 ℃"
    assert payload["timestamp"] == "2024-01-02 03:04:05"
    assert reported["state"]["reported"]["deviceResolution"] == "+/- 0.1125 ℉"
    assert reported["state"]["reported"]["temperatureUnits"] == "degrees Fahrenheit"


def test_debug_flag_raises_driver_log_level() -> None:
    driver = _driver(SimulatedBus(), "board", "mcp9808", "0x18", debug=True)
    assert driver._log.level == logging.DEBUG


def test_integral_float_options_are_accepted() -> None:
    driver = _driver(build_demo_bus(0), "legacy", "bmp180", "0x77", oss=0.0)
    assert driver.oss.key == 0


def test_short_calibration_read_fails_initialise() -> None:
    class TruncatingBus(SimulatedBus):
        def read_block(self, address: int, register: int, length: int) -> bytes:
            return super().read_block(address, register, length)[:-1]

    bus = TruncatingBus()
    reference = build_demo_bus()
    bus.registers = reference.registers
    driver = _driver(bus, "barometer", "bmp280", "0x77")
    assert driver.initialize() is False
    assert driver.state.status is DeviceStatus.ERROR
    assert "Short calibration read" in driver.state.last_error
    assert not driver.state.calibration.loaded


def test_htu21d_check_crc_accepts_json_strings() -> None:
    bus = build_demo_bus()
    bus.on_command(0x40, 0xF3, bytes([0x68, 0x3A, 0x00]))
    driver = _driver(bus, "humidity", "htu21d", "0x40", check_crc="false")
    assert driver.check_crc is False
    assert driver.initialize()
    assert np.isclose(driver.measure().temperature_c, 24.69, atol=0.01)

    strict = _driver(bus, "humidity", "htu21d", "0x40", check_crc="true")
    assert strict.initialize()
    assert "CRC mismatch" in strict.handle("measure").message


@pytest.mark.parametrize("family,address", [("bmp280", "0x77"), ("bme280", "0x76")])
def test_fixed_point_arithmetic_option(family: str, address: str) -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "baro", family, address, arithmetic="fixed")
    assert driver.initialize()
    reading = driver.measure()
    assert reading.temperature_c == 25.08
    assert np.isclose(reading.pressure_pa, 100653.27, atol=1.0)
    if family == "bme280":
        assert np.isclose(reading.humidity, 50.0, atol=0.01)


def test_mcp9808_identity_registers_do_not_overlap(caplog: pytest.LogCaptureFixture) -> None:
    bus = build_demo_bus()
    driver = _driver(bus, "board", "mcp9808", "0x18")
    with caplog.at_level(logging.WARNING):
        assert driver.initialize()
    assert "unexpected manufacturer ID" not in caplog.text
    assert driver.measure().temperature_c == 25.25
