"""Exception hierarchy shared by the bus, drivers and host."""
from __future__ import annotations


class SensorError(Exception):
    """Base class for every error raised by envsense."""


class BusError(SensorError):
    """A register read or write on the I2C bus did not complete."""


class ConfigError(SensorError, ValueError):
    """A configuration value does not match any known lookup entry."""


class DomainError(SensorError, ValueError):
    """A formula received an input outside its mathematical domain."""


class DeviceNotReady(SensorError):
    """A measurement was requested before the device finished initialising."""
