"""Raw samples, calibrated readings and the result records handed downstream."""
from __future__ import annotations

import enum
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

Clock = Callable[[], datetime]

# Payload keys that stay integers instead of being rounded.
_RAW_KEYS = {"channel0", "channel1"}


class DeviceStatus(str, enum.Enum):
    INITIALIZING = "not-ready"
    READY = "ready"
    ERROR = "error"


def local_timestamp(clock: Optional[Clock] = None) -> str:
    now = clock() if clock is not None else datetime.now()
    return now.isoformat(sep=" ", timespec="seconds")


@dataclass(frozen=True)
class RawSample:
    """ADC counts from one measurement cycle. Unused channels stay ``None``."""

    adc_t: Optional[int] = None
    adc_p: Optional[int] = None
    adc_h: Optional[int] = None
    channel0: Optional[int] = None
    channel1: Optional[int] = None


@dataclass(frozen=True)
class CalibratedReading:
    name: str
    family: str
    timestamp: str
    temperature_c: Optional[float] = None
    temperature_f: Optional[float] = None
    pressure_pa: Optional[float] = None
    pressure_inhg: Optional[float] = None
    humidity: Optional[float] = None
    lux: Optional[float] = None
    dew_point_c: Optional[float] = None
    dew_point_f: Optional[float] = None
    altitude_m: Optional[float] = None
    altitude_ft: Optional[float] = None
    channel0: Optional[int] = None
    channel1: Optional[int] = None
    resolution: Optional[str] = None
    resolution_f: Optional[str] = None

    def as_payload(self, decimals: int = 2) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None:
                continue
            if isinstance(value, float) and item.name not in _RAW_KEYS:
                value = round(value, decimals)
            payload[item.name] = value
        return payload

    def reported_state(self, decimals: int = 2) -> Dict[str, Any]:
        """Reshape the reading into the ``state.reported`` record used by collectors."""

        def rounded(value: Optional[float]) -> Optional[float]:
            return None if value is None else round(value, decimals)

        reported: Dict[str, Any] = {"device": "sensor", "name": self.family}
        if self.temperature_f is not None:
            reported["temperature"] = rounded(self.temperature_f)
            reported["temperatureUnits"] = "degrees Fahrenheit"
        optional = {
            "pressureHg": rounded(self.pressure_inhg),
            "relativeHumidity": rounded(self.humidity),
            "dewPoint": rounded(self.dew_point_f),
            "lux": rounded(self.lux),
            "altitude": rounded(self.altitude_m),
            "deviceResolution": self.resolution_f or self.resolution,
        }
        reported.update({key: value for key, value in optional.items() if value is not None})
        reported["timestamp"] = self.timestamp
        return {"state": {"reported": reported}}


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command token sent to a driver."""

    topic: str
    status: DeviceStatus
    reading: Optional[CalibratedReading] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reading is not None

    def outputs(self) -> List[Dict[str, Any]]:
        """Return the downstream messages: ``[payload, reported]`` or the failure text."""
        if self.reading is None:
            return [{"topic": self.topic, "payload": self.message}]
        return [
            {"topic": self.topic, "payload": self.reading.as_payload()},
            {"topic": self.topic, "payload": self.reading.reported_state()},
        ]
