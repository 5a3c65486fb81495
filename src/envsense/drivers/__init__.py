"""
I2C drivers for the supported environmental sensors.

The subpackage exposes the bus abstraction, calibration parsing, the
measurement sequencer, compensation formulas and the host that polls a set
of configured devices on a Raspberry Pi.
"""

from .bus import BusPort, LockedBus, SMBusPort, open_bus
from .coeff import CalibrationLayout, CalibrationStore, layout_for, read_device_id
from .config import DeviceConfig, HostConfig, load_config
from .devices import DRIVERS, DeviceDriver, DeviceState, create_driver
from .sequencer import MeasurementPlan, MeasurementSequencer, SequencerState, crc8
from .runner import Collector, SensorHost

__all__ = [
    "BusPort",
    "LockedBus",
    "SMBusPort",
    "open_bus",
    "CalibrationLayout",
    "CalibrationStore",
    "layout_for",
    "read_device_id",
    "DeviceConfig",
    "HostConfig",
    "load_config",
    "DRIVERS",
    "DeviceDriver",
    "DeviceState",
    "create_driver",
    "MeasurementPlan",
    "MeasurementSequencer",
    "SequencerState",
    "crc8",
    "Collector",
    "SensorHost",
]
