from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

try:
    import smbus2  # type: ignore[import]
except ImportError:  # pragma: no cover - handled when the bus is opened
    smbus2 = None  # type: ignore[assignment]

from ..errors import BusError

logger = logging.getLogger(__name__)


class BusPort(Protocol):
    """Register-level access to devices on one physical I2C bus."""

    def read_byte(self, address: int, register: int) -> int:
        ...

    def write_byte(self, address: int, register: int, value: int) -> None:
        ...

    def read_block(self, address: int, register: int, length: int) -> bytes:
        ...

    def send_byte(self, address: int, value: int) -> None:
        ...

    def read_raw(self, address: int, length: int) -> bytes:
        ...

    def close(self) -> None:
        ...


class SMBusPort:
    """BusPort backed by a Linux ``/dev/i2c-N`` handle via smbus2."""

    def __init__(self, bus_number: int = 1):
        if smbus2 is None:
            raise ImportError("smbus2 is required but not installed. Install it with 'pip install smbus2'.")
        self.bus_number = bus_number
        try:
            self._bus = smbus2.SMBus(bus_number)
        except OSError as exc:
            raise BusError(f"Unable to open I2C bus {bus_number}: {exc}") from exc
        logger.info("Opened I2C bus %d", bus_number)

    def read_byte(self, address: int, register: int) -> int:
        try:
            return int(self._bus.read_byte_data(address, register))
        except OSError as exc:
            raise BusError(f"read_byte 0x{address:02X}/0x{register:02X} failed: {exc}") from exc

    def write_byte(self, address: int, register: int, value: int) -> None:
        try:
            self._bus.write_byte_data(address, register, value & 0xFF)
        except OSError as exc:
            raise BusError(f"write_byte 0x{address:02X}/0x{register:02X} failed: {exc}") from exc

    def read_block(self, address: int, register: int, length: int) -> bytes:
        try:
            return bytes(self._bus.read_i2c_block_data(address, register, length))
        except OSError as exc:
            raise BusError(f"read_block 0x{address:02X}/0x{register:02X} ({length} bytes) failed: {exc}") from exc

    def send_byte(self, address: int, value: int) -> None:
        try:
            self._bus.write_byte(address, value & 0xFF)
        except OSError as exc:
            raise BusError(f"send_byte 0x{address:02X} <- 0x{value:02X} failed: {exc}") from exc

    def read_raw(self, address: int, length: int) -> bytes:
        msg = smbus2.i2c_msg.read(address, length)
        try:
            self._bus.i2c_rdwr(msg)
        except OSError as exc:
            raise BusError(f"read_raw 0x{address:02X} ({length} bytes) failed: {exc}") from exc
        return bytes(list(msg))

    def close(self) -> None:
        try:
            self._bus.close()
        except OSError:
            logger.debug("Error closing I2C bus %d", self.bus_number, exc_info=True)
        logger.info("Closed I2C bus %d", self.bus_number)

    def __enter__(self) -> "SMBusPort":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LockedBus:
    """
    Serialises transactions from several drivers sharing one bus. The lock is
    held for a single register transaction only, so conversion waits of one
    device do not block traffic to another.
    """

    def __init__(self, inner: BusPort, lock: Optional[threading.RLock] = None):
        self.inner = inner
        self._lock = lock or threading.RLock()

    def read_byte(self, address: int, register: int) -> int:
        with self._lock:
            return self.inner.read_byte(address, register)

    def write_byte(self, address: int, register: int, value: int) -> None:
        with self._lock:
            self.inner.write_byte(address, register, value)

    def read_block(self, address: int, register: int, length: int) -> bytes:
        with self._lock:
            return self.inner.read_block(address, register, length)

    def send_byte(self, address: int, value: int) -> None:
        with self._lock:
            self.inner.send_byte(address, value)

    def read_raw(self, address: int, length: int) -> bytes:
        with self._lock:
            return self.inner.read_raw(address, length)

    def close(self) -> None:
        with self._lock:
            self.inner.close()


def open_bus(bus_number: int = 1) -> LockedBus:
    return LockedBus(SMBusPort(bus_number))
