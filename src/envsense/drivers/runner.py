from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import typer

from ..errors import ConfigError
from ..readings import CalibratedReading, Clock, CommandResult
from .bus import BusPort, open_bus
from .coeff import coeff_metadata, layout_for
from .config import HostConfig, load_config
from .devices import DeviceDriver, create_driver

logger = logging.getLogger(__name__)

SUMMARY_FIELDS = ("temperature_c", "pressure_pa", "humidity", "dew_point_c", "altitude_m", "lux")


class Collector:
    """
    Buffers ``state.reported`` blocks until ``size`` devices have reported,
    then emits them as one combined record.
    """

    def __init__(self, size: int, topic: str = "collector") -> None:
        if size < 1:
            raise ConfigError(f"Collector size must be at least 1, got {size}")
        self.size = size
        self.topic = topic
        self._devices: List[Dict[str, Any]] = []

    @property
    def pending(self) -> int:
        return len(self._devices)

    def add(self, payload: Any) -> Optional[Dict[str, Any]]:
        state = payload.get("state") if isinstance(payload, dict) else None
        reported = state.get("reported") if isinstance(state, dict) else None
        if not isinstance(reported, dict) or "device" not in reported:
            logger.debug("Collector ignoring payload without state.reported.device")
            return None
        self._devices.append(reported)
        logger.debug("Collector holds %d/%d devices", len(self._devices), self.size)
        if len(self._devices) < self.size:
            return None
        message = {
            "topic": self.topic,
            "payload": {"state": {"reported": {"devices": list(self._devices)}}},
        }
        self._devices = []
        return message


class SensorHost:
    """Host-side orchestrator owning the bus and every configured driver."""

    def __init__(
        self,
        config: HostConfig,
        bus: Optional[BusPort] = None,
        bus_factory: Callable[[int], BusPort] = open_bus,
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = config
        self._owns_bus = bus is None
        self.bus = bus if bus is not None else bus_factory(config.bus)
        self._sleep = sleep
        try:
            self.drivers: Dict[str, DeviceDriver] = {
                name: create_driver(self.bus, device, sleep=sleep, clock=clock)
                for name, device in config.devices.items()
            }
        except ConfigError:
            self.close()
            raise
        self.collector = Collector(config.collector_size) if config.collector_size > 0 else None
        self.processed = 0
        self.failures = 0
        self._history: Dict[str, Dict[str, List[float]]] = {}

    def initialize(self) -> Dict[str, bool]:
        results = {name: driver.initialize() for name, driver in self.drivers.items()}
        ready = sum(results.values())
        logger.info("%d/%d devices ready", ready, len(results))
        return results

    def dispatch(self, command: Any = "measure", device: Optional[str] = None) -> List[CommandResult]:
        if device is None:
            targets = list(self.drivers.values())
        else:
            try:
                targets = [self.drivers[device]]
            except KeyError:
                raise ConfigError(f"Unknown device '{device}' (configured: {', '.join(self.drivers)})") from None
        results: List[CommandResult] = []
        for driver in targets:
            result = driver.handle(command)
            if result.ok:
                self.processed += 1
                self._record(driver.name, result.reading)
            else:
                self.failures += 1
            results.append(result)
        return results

    def route(self, results: List[CommandResult]) -> List[Dict[str, Any]]:
        """Expand results into downstream messages, feeding the collector on the way."""
        messages: List[Dict[str, Any]] = []
        for result in results:
            messages.extend(result.outputs())
            if self.collector is not None and result.reading is not None:
                combined = self.collector.add(result.reading.reported_state())
                if combined is not None:
                    messages.append(combined)
        return messages

    def poll(
        self,
        count: Optional[int] = None,
        interval_sec: Optional[float] = None,
        emit: Callable[[Dict[str, Any]], None] = lambda message: None,
    ) -> int:
        interval = self.config.interval_sec if interval_sec is None else interval_sec
        stats_interval = max(float(self.config.stats_log_interval), 5.0)
        next_log = time.monotonic() + stats_interval
        ticks = 0
        try:
            while count is None or ticks < count:
                for message in self.route(self.dispatch("measure")):
                    emit(message)
                ticks += 1
                if time.monotonic() >= next_log:
                    self._log_stats("Stats")
                    next_log = time.monotonic() + stats_interval
                if count is None or ticks < count:
                    self._sleep(interval)
        except KeyboardInterrupt:
            logger.info("Stopping host (Ctrl+C)")
        finally:
            self._log_stats("Final stats")
        return ticks

    def summarize(self) -> Dict[str, Dict[str, Dict[str, float]]]:
        summary: Dict[str, Dict[str, Dict[str, float]]] = {}
        for name, quantities in self._history.items():
            summary[name] = {}
            for quantity, values in quantities.items():
                arr = np.asarray(values, dtype=float)
                summary[name][quantity] = {
                    "count": int(arr.size),
                    "mean": float(np.mean(arr)),
                    "min": float(np.min(arr)),
                    "max": float(np.max(arr)),
                }
        return summary

    def close(self) -> None:
        if self._owns_bus:
            self.bus.close()

    def __enter__(self) -> "SensorHost":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _record(self, name: str, reading: Optional[CalibratedReading]) -> None:
        if reading is None:
            return
        history = self._history.setdefault(name, {})
        for quantity in SUMMARY_FIELDS:
            value = getattr(reading, quantity)
            if value is not None:
                history.setdefault(quantity, []).append(float(value))

    def _log_stats(self, label: str) -> None:
        logger.info(
            "%s: processed=%d failures=%d devices=%d pending_collector=%d",
            label,
            self.processed,
            self.failures,
            len(self.drivers),
            self.collector.pending if self.collector is not None else 0,
        )


def _configure_logging(verbose: bool, debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose or debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_json(message: Dict[str, Any]) -> None:
    typer.echo(json.dumps(message, ensure_ascii=False))


calib_app = typer.Typer(help="Calibration coefficient utilities.")


@calib_app.command("dump")
def calib_dump(
    device: str = typer.Option(..., "--device", "-d", help="Configured device name"),
    config_path: Path = typer.Option(
        Path("host_pi/sensors.json"), "--config", "-c", help="Path to sensor host config."
    ),
    override: Optional[List[str]] = typer.Option(None, "--set", help="Override config keys."),
):
    """Read a device's factory calibration and print the decoded coefficients."""

    cfg = load_config(config_path, override or None)
    if device not in cfg.devices:
        raise typer.BadParameter(f"Unknown device '{device}'", param_hint="--device")
    cfg.devices = {device: cfg.devices[device]}
    with SensorHost(cfg) as host:
        driver = host.drivers[device]
        if not driver.initialize():
            typer.echo(f"Calibration read FAILED: {driver.state.last_error}")
            raise typer.Exit(code=1)
        store = driver.state.calibration
        for (register, length), blob in zip(store.layout.blocks, store.blocks):
            typer.echo(f"Block 0x{register:02X} ({length} bytes): {blob.hex()}")
        for key, value in coeff_metadata(store.coefficients).items():
            typer.echo(f"{key}: {value}")


@calib_app.command("parse")
def calib_parse(
    family: str = typer.Option(..., "--family", "-f", help="Device family (bme280|bmp280|bmp180)"),
    humidity_layout: str = typer.Option("datasheet", "--humidity-layout", help="BME280 H4/H5 packing: datasheet|legacy."),
    blocks: List[str] = typer.Argument(..., help="Hex dump of each calibration block, in register order"),
):
    """Decode calibration blocks captured elsewhere, without touching the bus."""

    try:
        layout = layout_for(family, humidity_layout)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc), param_hint="--family") from exc
    if layout.parser is None:
        typer.echo(f"{family} has no calibration blocks")
        return
    if len(blocks) != len(layout.blocks):
        raise typer.BadParameter(f"{family} expects {len(layout.blocks)} block(s), got {len(blocks)}")
    try:
        data = [bytes.fromhex(block.replace(" ", "")) for block in blocks]
        coeff = layout.parser(data)
    except ValueError as exc:
        typer.echo(f"Parse FAILED: {exc}")
        raise typer.Exit(code=1) from exc
    for key, value in coeff_metadata(coeff).items():
        typer.echo(f"{key}: {value}")


app = typer.Typer(add_completion=False, help="Environmental sensor host utilities.")
app.add_typer(calib_app, name="calib")


@app.command()
def run(
    config_path: Path = typer.Option(
        Path("host_pi/sensors.json"), "--config", "-c", help="Path to sensor host config."
    ),
    count: Optional[int] = typer.Option(None, "--count", "-n", help="Number of polling ticks (default: forever)."),
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between ticks (overrides config)."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set interval_sec=10 --set devices.outdoor.t_oversampling=4",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """Poll every configured sensor and print one JSON message per line."""

    cfg = load_config(config_path, override or None)
    _configure_logging(verbose, cfg.debug)
    with SensorHost(cfg) as host:
        host.initialize()
        host.poll(count=count, interval_sec=interval, emit=_echo_json)
        for name, quantities in host.summarize().items():
            for quantity, stats in quantities.items():
                logger.info(
                    "%s %s: n=%d mean=%.3f min=%.3f max=%.3f",
                    name,
                    quantity,
                    stats["count"],
                    stats["mean"],
                    stats["min"],
                    stats["max"],
                )


@app.command()
def measure(
    config_path: Path = typer.Option(
        Path("host_pi/sensors.json"), "--config", "-c", help="Path to sensor host config."
    ),
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Only measure this device."),
    override: Optional[List[str]] = typer.Option(None, "--set", help="Override config keys."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """Take one measurement from each device and print the results."""

    cfg = load_config(config_path, override or None)
    _configure_logging(verbose, cfg.debug)
    with SensorHost(cfg) as host:
        host.initialize()
        try:
            results = host.dispatch("measure", device=device)
        except ConfigError as exc:
            raise typer.BadParameter(str(exc), param_hint="--device") from exc
        for message in host.route(results):
            _echo_json(message)
    if not all(result.ok for result in results):
        raise typer.Exit(code=1)
