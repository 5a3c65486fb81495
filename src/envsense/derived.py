"""Quantities derived from calibrated temperature, humidity and pressure."""
from __future__ import annotations

import math

from .errors import DomainError

# Arden Buck constants for the dew point approximation.
DEW_A = 8.1332
DEW_B = 1763.39
DEW_C = 235.66

SEA_LEVEL_PA = 101325.0
PA_PER_INHG = 3386.39
M_PER_FT = 0.3048


def dew_point(temp_c: float, rel_humidity: float) -> float:
    """Return the dew point in degrees Celsius.

    Parameters
    ----------
    temp_c:
        Air temperature in degrees Celsius.
    rel_humidity:
        Relative humidity in percent. Must be strictly positive.

    Raises
    ------
    DomainError
        If the humidity is zero, negative or not finite, where the logarithm
        in the approximation is undefined.
    """

    if not math.isfinite(rel_humidity) or rel_humidity <= 0.0:
        raise DomainError(f"Dew point undefined for relative humidity {rel_humidity!r}")
    if not math.isfinite(temp_c) or math.isclose(DEW_C + temp_c, 0.0):
        raise DomainError(f"Dew point undefined for temperature {temp_c!r}")

    exponent = DEW_A - DEW_B / (DEW_C + temp_c)
    partial_pressure = math.pow(10.0, exponent)
    operand = partial_pressure * rel_humidity / 100.0
    return -(DEW_C + DEW_B / (math.log10(operand) - DEW_A))


def altitude(pressure_pa: float) -> float:
    """Barometric altitude in metres relative to standard sea-level pressure."""

    if pressure_pa < 0.0:
        raise DomainError(f"Altitude undefined for negative pressure {pressure_pa!r}")
    return 44330.0 * (1.0 - math.pow(pressure_pa / SEA_LEVEL_PA, 1.0 / 5.255))


def c_to_f(temp_c: float) -> float:
    return temp_c * 1.8 + 32.0


def pa_to_inhg(pressure_pa: float) -> float:
    return pressure_pa / PA_PER_INHG


def m_to_ft(metres: float) -> float:
    return metres / M_PER_FT
