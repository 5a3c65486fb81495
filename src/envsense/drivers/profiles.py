"""Lookup tables mapping configuration choices to register bits and conversion times."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, TypeVar

from ..errors import ConfigError

T = TypeVar("T")


@dataclass(frozen=True)
class OversamplingProfile:
    key: Any
    bits: int
    time_ms: float
    precision: str
    precision_f: Optional[str] = None
    humidity_ms: float = 0.0


def select(table: Mapping[Any, T], key: Any, label: str) -> T:
    try:
        return table[key]
    except (KeyError, TypeError):
        choices = ", ".join(str(item) for item in table)
        raise ConfigError(f"Unsupported {label} '{key}' (expected one of {choices})") from None


def _bmx280_profile(multiplier: int, bits: int) -> OversamplingProfile:
    label = f"x{multiplier}" if multiplier else "skipped"
    return OversamplingProfile(key=multiplier, bits=bits, time_ms=2.3 * multiplier, precision=label)


# Oversampling multiplier -> osrs_x register bits.
BMX280_OVERSAMPLING: Dict[int, OversamplingProfile] = {
    multiplier: _bmx280_profile(multiplier, bits)
    for multiplier, bits in ((0, 0), (1, 1), (2, 2), (4, 3), (8, 4), (16, 5))
}
BMX280_TP_OVERSAMPLING = {key: value for key, value in BMX280_OVERSAMPLING.items() if key}

BMX280_POWER_MODES: Dict[str, int] = {"sleep": 0b00, "forced": 0b01, "normal": 0b11}


def bmx280_conversion_ms(
    t_os: OversamplingProfile,
    p_os: OversamplingProfile,
    h_os: Optional[OversamplingProfile] = None,
) -> float:
    """Worst-case measurement time from the Bosch datasheet, in milliseconds."""

    total = 1.25 + 2.3 * t_os.key
    if p_os.key:
        total += 2.3 * p_os.key + 0.575
    if h_os is not None and h_os.key:
        total += 2.3 * h_os.key + 0.575
    return total


BMP180_TEMPERATURE_MS = 4.5
BMP180_OSS: Dict[int, OversamplingProfile] = {
    0: OversamplingProfile(0, 0, 4.5, "ultra low power"),
    1: OversamplingProfile(1, 1, 7.5, "standard"),
    2: OversamplingProfile(2, 2, 13.5, "high resolution"),
    3: OversamplingProfile(3, 3, 25.5, "ultra high resolution"),
}

# User register measurement resolution; time_ms is the temperature conversion.
HTU21D_RESOLUTION: Dict[int, OversamplingProfile] = {
    0: OversamplingProfile(0, 0x00, 50.0, "RH 12 bit, T 14 bit", humidity_ms=16.0),
    1: OversamplingProfile(1, 0x01, 13.0, "RH 8 bit, T 12 bit", humidity_ms=3.0),
    2: OversamplingProfile(2, 0x80, 25.0, "RH 10 bit, T 13 bit", humidity_ms=5.0),
    3: OversamplingProfile(3, 0x81, 7.0, "RH 11 bit, T 11 bit", humidity_ms=8.0),
}

TSL2561_INTEGRATION: Dict[int, OversamplingProfile] = {
    0: OversamplingProfile(0, 0b00, 13.7, "13.7 ms"),
    1: OversamplingProfile(1, 0b01, 101.0, "101 ms"),
    2: OversamplingProfile(2, 0b10, 402.0, "402 ms"),
}
TSL2561_GAIN: Dict[str, int] = {"low": 0x00, "high": 0x10}

# Channel 0 (low, high) count thresholds for switching gain, per integration time.
TSL2561_AUTO_GAIN_THRESHOLDS: Dict[int, Tuple[int, int]] = {
    0: (100, 4850),
    1: (200, 36000),
    2: (500, 63000),
}

MCP9808_RESOLUTION: Dict[int, OversamplingProfile] = {
    0: OversamplingProfile(0, 0, 30.0, "+/- 0.5 ℃", "+/- 0.9 ℉"),
    1: OversamplingProfile(1, 1, 65.0, "+/- 0.25 ℃", "+/- 0.45 ℉"),
    2: OversamplingProfile(2, 2, 130.0, "+/- 0.125 ℃", "+/- 0.225 ℉"),
    3: OversamplingProfile(3, 3, 250.0, "+/- 0.0625 ℃", "+/- 0.1125 ℉"),
}
