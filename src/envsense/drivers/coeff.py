from __future__ import annotations

import functools
import logging
import struct
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from ..errors import BusError, ConfigError, DeviceNotReady
from .bus import BusPort

logger = logging.getLogger(__name__)

BMX280_CALIB_TP_REG = 0x88
BMX280_CALIB_TP_LEN = 24
BME280_CALIB_BLOCK1_LEN = 26  # T/P words, reserved 0xA0, dig_H1 at 0xA1
BME280_CALIB_H_REG = 0xE1
BME280_CALIB_H_LEN = 7
BMP180_CALIB_REG = 0xAA
BMP180_CALIB_LEN = 22

HUMIDITY_LAYOUTS = ("datasheet", "legacy")


def _s8(value: int) -> int:
    return value - 0x100 if value & 0x80 else value


@dataclass(frozen=True)
class Bmp280Calibration:
    dig_T1: int
    dig_T2: int
    dig_T3: int
    dig_P1: int
    dig_P2: int
    dig_P3: int
    dig_P4: int
    dig_P5: int
    dig_P6: int
    dig_P7: int
    dig_P8: int
    dig_P9: int


@dataclass(frozen=True)
class Bme280Calibration(Bmp280Calibration):
    dig_H1: int
    dig_H2: int
    dig_H3: int
    dig_H4: int
    dig_H5: int
    dig_H6: int


@dataclass(frozen=True)
class Bmp180Calibration:
    ac1: int
    ac2: int
    ac3: int
    ac4: int
    ac5: int
    ac6: int
    b1: int
    b2: int
    mb: int
    mc: int
    md: int


def _require_length(blob: bytes, expected: int, label: str) -> None:
    if len(blob) < expected:
        raise ValueError(f"{label} calibration block must be {expected} bytes, got {len(blob)}")


def _unpack_tp(blob: bytes) -> Tuple[int, ...]:
    return struct.unpack("<Hhh" + "H" + "h" * 8, blob[:BMX280_CALIB_TP_LEN])


def parse_bmp280(blocks: Sequence[bytes]) -> Bmp280Calibration:
    (blob,) = blocks
    _require_length(blob, BMX280_CALIB_TP_LEN, "BMP280")
    return Bmp280Calibration(*_unpack_tp(blob))


def parse_bme280(blocks: Sequence[bytes], humidity_layout: str = "datasheet") -> Bme280Calibration:
    """
    Decode the two BME280 calibration blocks.

    ``humidity_layout`` selects how dig_H4/dig_H5 are rebuilt from the
    nibble-packed bytes 0xE4..0xE6. ``datasheet`` follows the Bosch reference
    (signed 12-bit values), ``legacy`` reproduces the packing used by some
    older driver code and is kept for parity with data recorded that way.
    """

    if humidity_layout not in HUMIDITY_LAYOUTS:
        raise ConfigError(f"Unknown humidity layout '{humidity_layout}', expected one of {HUMIDITY_LAYOUTS}")
    block1, block2 = blocks
    _require_length(block1, BME280_CALIB_BLOCK1_LEN, "BME280 T/P")
    _require_length(block2, BME280_CALIB_H_LEN, "BME280 humidity")

    tp = _unpack_tp(block1)
    dig_H1 = block1[25]
    (dig_H2,) = struct.unpack_from("<h", block2, 0)
    dig_H3 = block2[2]
    e4, e5, e6 = block2[3], block2[4], block2[5]
    (dig_H6,) = struct.unpack_from("<b", block2, 6)

    if humidity_layout == "datasheet":
        dig_H4 = (_s8(e4) << 4) | (e5 & 0x0F)
        dig_H5 = (_s8(e6) << 4) | (e5 >> 4)
    else:
        dig_H4 = (e4 << 4) | (e5 & 0x0F)
        dig_H5 = ((e5 & 0xF0) << 4) | e6

    return Bme280Calibration(*tp, dig_H1, dig_H2, dig_H3, dig_H4, dig_H5, dig_H6)


def parse_bmp180(blocks: Sequence[bytes]) -> Bmp180Calibration:
    (blob,) = blocks
    _require_length(blob, BMP180_CALIB_LEN, "BMP180")
    return Bmp180Calibration(*struct.unpack(">hhhHHHhhhhh", blob[:BMP180_CALIB_LEN]))


@dataclass(frozen=True)
class CalibrationLayout:
    """Fixed block reads (register, length) and the parser that decodes them."""

    blocks: Tuple[Tuple[int, int], ...]
    parser: Optional[Callable[[Sequence[bytes]], Any]] = None


NO_CALIBRATION = CalibrationLayout(blocks=())
BMP280_LAYOUT = CalibrationLayout(((BMX280_CALIB_TP_REG, BMX280_CALIB_TP_LEN),), parse_bmp280)
BMP180_LAYOUT = CalibrationLayout(((BMP180_CALIB_REG, BMP180_CALIB_LEN),), parse_bmp180)


def bme280_layout(humidity_layout: str = "datasheet") -> CalibrationLayout:
    return CalibrationLayout(
        (
            (BMX280_CALIB_TP_REG, BME280_CALIB_BLOCK1_LEN),
            (BME280_CALIB_H_REG, BME280_CALIB_H_LEN),
        ),
        functools.partial(parse_bme280, humidity_layout=humidity_layout),
    )


def layout_for(family: str, humidity_layout: str = "datasheet") -> CalibrationLayout:
    key = family.lower()
    if key == "bme280":
        return bme280_layout(humidity_layout)
    if key == "bmp280":
        return BMP280_LAYOUT
    if key == "bmp180":
        return BMP180_LAYOUT
    if key in {"htu21d", "tsl2561", "mcp9808"}:
        return NO_CALIBRATION
    raise ConfigError(f"Unknown device family '{family}'")


class CalibrationStore:
    """
    Reads the factory calibration once and caches the decoded coefficients.

    A failed read leaves the store empty so that the next ``load`` retries
    from scratch; a successful one makes later calls free of bus traffic.
    """

    def __init__(self, layout: CalibrationLayout) -> None:
        self.layout = layout
        self._loaded = False
        self._blocks: Tuple[bytes, ...] = ()
        self._coeff: Any = None

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def blocks(self) -> Tuple[bytes, ...]:
        return self._blocks

    @property
    def coefficients(self) -> Any:
        if not self._loaded:
            raise DeviceNotReady("Calibration coefficients have not been loaded")
        return self._coeff

    def load(self, bus: BusPort, address: int) -> Any:
        if self._loaded:
            return self._coeff
        blocks = tuple(bus.read_block(address, register, length) for register, length in self.layout.blocks)
        for (register, length), blob in zip(self.layout.blocks, blocks):
            if len(blob) < length:
                raise BusError(
                    f"Short calibration read from 0x{address:02X}/0x{register:02X}: {len(blob)} of {length} bytes"
                )
        coeff = self.layout.parser(blocks) if self.layout.parser is not None else None
        self._blocks = blocks
        self._coeff = coeff
        self._loaded = True
        if coeff is not None:
            logger.debug("Loaded calibration from 0x%02X: %s", address, coeff)
        return coeff

    def reset(self) -> None:
        self._loaded = False
        self._blocks = ()
        self._coeff = None


def read_device_id(bus: BusPort, address: int, register: int, attempts: int = 1) -> int:
    attempts = max(int(attempts), 1)
    last_exc: Optional[BusError] = None
    for attempt in range(1, attempts + 1):
        try:
            return bus.read_byte(address, register)
        except BusError as exc:
            last_exc = exc
            logger.debug("Device ID read at 0x%02X failed (attempt %d/%d): %s", address, attempt, attempts, exc)
    raise last_exc  # type: ignore[misc]


def coeff_metadata(coeff: Any) -> Dict[str, int]:
    if coeff is None:
        return {}
    return asdict(coeff)
