"""Rounding primitives that turn proportional shares into usable quantities.

Beds resolve to whole numbers and PCA shares to quarter FTE, because a PCA
covers four 0.25 FTE slots per day. All functions are total: NaN and
infinities pass through unchanged.
"""

from __future__ import annotations

import math


QUARTER = 0.25


def round_to_nearest_integer(value: float) -> float:
    """Round half away from zero (``2.5 -> 3``, ``-2.5 -> -3``)."""
    if not math.isfinite(value):
        return value
    return math.copysign(math.floor(abs(value) + 0.5), value) + 0.0


def round_to_nearest(value: float, nearest: float = 1.0) -> float:
    if not math.isfinite(value):
        return value
    return round_to_nearest_integer(value / nearest) * nearest


def round_to_nearest_quarter(value: float) -> float:
    return round_to_nearest(value, QUARTER)


def round_down_to_quarter(value: float) -> float:
    """Floor to the 0.25 grid: ``0.7 -> 0.5``, ``0.75 -> 0.75``."""
    if not math.isfinite(value):
        return value
    return math.floor(value / QUARTER + 1e-9) * QUARTER


def round_to_nearest_quarter_with_midpoint(value: float) -> float:
    """Round to 0.25 where an exact midpoint rounds down.

    ``1.125 -> 1.0`` but ``1.15 -> 1.25``. Applied to pending PCA need.
    """
    if not math.isfinite(value):
        return value
    if value < 0:
        return -round_to_nearest_quarter_with_midpoint(-value)
    lower = math.floor(value / QUARTER + 1e-9) * QUARTER
    midpoint = lower + QUARTER / 2
    if value > midpoint + 1e-9:
        return lower + QUARTER
    return lower


def to_slot_units(fte: float) -> int:
    """Number of whole 0.25 slots contained in ``fte`` after quarter rounding."""
    return int(round_to_nearest_integer(round_to_nearest_quarter(fte) / QUARTER))
