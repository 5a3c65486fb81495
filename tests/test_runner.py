from __future__ import annotations

import logging
from typing import Any, Dict, List

import pytest
from typer.testing import CliRunner

from envsense.demo import build_demo_bus, demo_config
from envsense.drivers.config import config_from_mapping
from envsense.drivers.runner import Collector, SensorHost, app
from envsense.errors import ConfigError


def _reported(name: str) -> Dict[str, Any]:
    return {"state": {"reported": {"device": "sensor", "name": name}}}


def test_collector_emits_after_size_and_resets() -> None:
    collector = Collector(2)
    assert collector.add(_reported("bme280")) is None
    assert collector.pending == 1
    message = collector.add(_reported("mcp9808"))
    assert message is not None
    assert message["topic"] == "collector"
    names = [item["name"] for item in message["payload"]["state"]["reported"]["devices"]]
    assert names == ["bme280", "mcp9808"]
    assert collector.pending == 0


def test_collector_ignores_other_payloads() -> None:
    collector = Collector(1)
    assert collector.add("bme280 device is not ready - skipping measurement.") is None
    assert collector.add({"state": {"reported": {"name": "x"}}}) is None
    assert collector.pending == 0


def test_collector_rejects_zero_size() -> None:
    with pytest.raises(ConfigError):
        Collector(0)


def test_host_dispatch_and_route() -> None:
    cfg = demo_config(1)
    cfg.collector_size = 5
    with SensorHost(cfg, bus_factory=build_demo_bus, sleep=lambda _s: None) as host:
        assert all(host.initialize().values())
        results = host.dispatch("measure")
        assert [result.ok for result in results] == [True] * 5
        messages = host.route(results)
    # payload + reported per device, then one combined collector record
    assert len(messages) == 11
    assert messages[-1]["topic"] == "collector"
    assert len(messages[-1]["payload"]["state"]["reported"]["devices"]) == 5
    assert host.processed == 5
    assert host.failures == 0


def test_host_dispatch_single_device() -> None:
    host = SensorHost(demo_config(1), bus_factory=build_demo_bus, sleep=lambda _s: None)
    host.initialize()
    (result,) = host.dispatch("measure", device="board")
    assert result.topic == "mcp9808"
    assert result.reading.temperature_c == 25.25
    with pytest.raises(ConfigError):
        host.dispatch("measure", device="attic")


def test_host_counts_not_ready_devices_as_failures() -> None:
    host = SensorHost(demo_config(1), bus_factory=build_demo_bus, sleep=lambda _s: None)
    results = host.dispatch("measure")
    assert not any(result.ok for result in results)
    assert host.failures == 5
    assert host.route(results)[0]["payload"] == "outdoor device is not ready - skipping measurement."


def test_poll_counts_ticks_and_sleeps_between(caplog: pytest.LogCaptureFixture) -> None:
    sleeps: List[float] = []
    emitted: List[Dict[str, Any]] = []
    host = SensorHost(demo_config(0), bus_factory=build_demo_bus, sleep=sleeps.append)
    host.initialize()
    with caplog.at_level(logging.INFO):
        ticks = host.poll(count=3, interval_sec=0.5, emit=emitted.append)
    assert ticks == 3
    # the sequencer sleeps too; only the poll interval is 0.5
    assert sleeps.count(0.5) == 2
    assert len(emitted) == 6
    assert "Final stats: processed=3 failures=0" in caplog.text

    summary = host.summarize()["legacy"]
    assert summary["temperature_c"] == {"count": 3, "mean": 15.0, "min": 15.0, "max": 15.0}
    assert summary["pressure_pa"]["mean"] == 69964.0


def test_poll_stops_on_keyboard_interrupt() -> None:
    def interrupt(_seconds: float) -> None:
        raise KeyboardInterrupt

    cfg = config_from_mapping({"devices": {"board": {"family": "mcp9808"}}})
    host = SensorHost(cfg, bus_factory=build_demo_bus, sleep=interrupt)
    host.initialize()
    # the MCP9808 conversion wait is the first sleep, so the first tick is interrupted
    assert host.poll(count=None) == 0


def test_host_closes_owned_bus_only() -> None:
    buses = []

    def factory(number: int):
        bus = build_demo_bus(number)
        buses.append(bus)
        return bus

    with SensorHost(demo_config(1), bus_factory=factory):
        pass
    assert buses[0].closed

    shared = build_demo_bus()
    SensorHost(demo_config(1), bus=shared).close()
    assert not shared.closed


def test_host_closes_bus_on_config_error() -> None:
    buses = []

    def factory(number: int):
        bus = build_demo_bus(number)
        buses.append(bus)
        return bus

    cfg = config_from_mapping({"devices": {"board": {"family": "mcp9808", "address": "0x40"}}})
    with pytest.raises(ConfigError):
        SensorHost(cfg, bus_factory=factory)
    assert buses[0].closed


def test_calib_parse_command() -> None:
    block = "706B436718FC7D8E43D6D00B270B8C00F9FF8C3CF8C67017"
    result = CliRunner().invoke(app, ["calib", "parse", "--family", "bmp280", block])
    assert result.exit_code == 0, result.output
    assert "dig_T1: 27504" in result.output
    assert "dig_P9: 6000" in result.output


def test_calib_parse_wrong_block_count() -> None:
    result = CliRunner().invoke(app, ["calib", "parse", "--family", "bme280", "00"])
    assert result.exit_code != 0
