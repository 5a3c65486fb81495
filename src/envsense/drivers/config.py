from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence

from ..errors import ConfigError

FAMILIES = ("bme280", "bmp280", "bmp180", "htu21d", "tsl2561", "mcp9808")

DEFAULT_ADDRESSES: Dict[str, int] = {
    "bme280": 0x77,
    "bmp280": 0x77,
    "bmp180": 0x77,
    "htu21d": 0x40,
    "tsl2561": 0x39,
    "mcp9808": 0x18,
}

_DEVICE_KEYS = {"name", "family", "address", "topic", "debug", "options"}


@dataclass
class DeviceConfig:
    name: str
    family: str
    address: int
    topic: str = ""
    debug: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.topic:
            self.topic = self.family


@dataclass
class HostConfig:
    bus: int = 1
    debug: bool = False
    interval_sec: float = 60.0
    collector_size: int = 0
    stats_log_interval: float = 60.0
    devices: Dict[str, DeviceConfig] = field(default_factory=dict)


def parse_address(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid I2C address {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip(), 0)
    except ValueError as exc:
        raise ConfigError(f"Invalid I2C address {value!r}") from exc


def device_config_from_mapping(name: str, data: Mapping[str, Any]) -> DeviceConfig:
    if not isinstance(data, Mapping):
        raise ConfigError(f"Device '{name}' must be a JSON object")
    family = str(data.get("family", "")).lower()
    if family not in FAMILIES:
        raise ConfigError(f"Device '{name}' has unknown family '{data.get('family')}' (expected one of {FAMILIES})")
    options: Dict[str, Any] = dict(data.get("options") or {})
    options.update({key: value for key, value in data.items() if key not in _DEVICE_KEYS})
    return DeviceConfig(
        name=str(data.get("name", name)),
        family=family,
        address=parse_address(data.get("address", DEFAULT_ADDRESSES[family])),
        topic=str(data.get("topic") or family),
        debug=bool(data.get("debug", False)),
        options=options,
    )


def config_from_mapping(data: Mapping[str, Any]) -> HostConfig:
    devices_data = data.get("devices") or {}
    if not isinstance(devices_data, Mapping):
        raise ConfigError("'devices' must map device names to device settings")
    devices = {name: device_config_from_mapping(name, value) for name, value in devices_data.items()}
    try:
        return HostConfig(
            bus=int(data.get("bus", 1)),
            debug=bool(data.get("debug", False)),
            interval_sec=float(data.get("interval_sec", 60.0)),
            collector_size=int(data.get("collector_size", 0)),
            stats_log_interval=float(data.get("stats_log_interval", 60.0)),
            devices=devices,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid host setting: {exc}") from exc


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str, overrides: Sequence[str] | None = None) -> HostConfig:
    """
    Load the sensor host configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["interval_sec=10", "devices.outdoor.t_oversampling=4"]
    """
    config_path = Path(path)
    data = _load_json(config_path)
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    return config_from_mapping(merged)


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ConfigError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ConfigError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
