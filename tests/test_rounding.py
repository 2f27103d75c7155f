from __future__ import annotations

import math

import pytest

from ward_allocation.domain.rounding import (
    round_down_to_quarter,
    round_to_nearest_integer,
    round_to_nearest_quarter,
    round_to_nearest_quarter_with_midpoint,
    to_slot_units,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(2.5, 3.0), (-2.5, -3.0), (2.49, 2.0), (-0.4, 0.0), (4.0, 4.0)],
)
def test_round_to_nearest_integer_is_half_away_from_zero(value: float, expected: float) -> None:
    assert round_to_nearest_integer(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.1, 0.0), (0.125, 0.25), (0.37, 0.25), (0.625, 0.75), (1.9, 2.0), (-0.125, -0.25)],
)
def test_round_to_nearest_quarter(value: float, expected: float) -> None:
    assert round_to_nearest_quarter(value) == expected


@pytest.mark.parametrize("value", [0.0, 0.13, 0.49, 1.1, 2.875, 3.33, -1.62, 7.77])
def test_round_to_nearest_quarter_is_idempotent(value: float) -> None:
    once = round_to_nearest_quarter(value)
    assert round_to_nearest_quarter(once) == once


def test_round_down_to_quarter() -> None:
    assert round_down_to_quarter(0.7) == 0.5
    assert round_down_to_quarter(0.75) == 0.75
    assert round_down_to_quarter(0.24) == 0.0


def test_midpoint_rounds_down_only_at_exact_midpoint() -> None:
    assert round_to_nearest_quarter_with_midpoint(1.125) == 1.0
    assert round_to_nearest_quarter_with_midpoint(1.15) == 1.25
    assert round_to_nearest_quarter_with_midpoint(0.5) == 0.5


def test_non_finite_values_pass_through() -> None:
    assert math.isnan(round_to_nearest_integer(float("nan")))
    assert math.isnan(round_to_nearest_quarter(float("nan")))
    assert round_to_nearest_quarter(float("inf")) == float("inf")
    assert round_down_to_quarter(float("-inf")) == float("-inf")


def test_to_slot_units() -> None:
    assert to_slot_units(1.0) == 4
    assert to_slot_units(0.5) == 2
    assert to_slot_units(0.3) == 1
