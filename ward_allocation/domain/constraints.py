"""Domain-level validation rules for allocation inputs and engine settings."""

from __future__ import annotations

import math
from dataclasses import dataclass

from ward_allocation.domain.errors import PreconditionViolation
from ward_allocation.domain.models import SLOTS, LeaveKind, StaffEdit, TeamFTE


PRIORITY_PREFERENCE_THEN_ID = "preference_then_id"
PRIORITY_STAFF_ID = "staff_id"
PCA_PRIORITY_ORDERS = (PRIORITY_PREFERENCE_THEN_ID, PRIORITY_STAFF_ID)

_FULL_DAY_LEAVE = frozenset({LeaveKind.VL, LeaveKind.SICK_LEAVE, LeaveKind.SDO, LeaveKind.TIL})


@dataclass(frozen=True)
class AllocationConfig:
    bed_reconciliation_tolerance: int = 1
    floating_pca_priority_order: str = PRIORITY_PREFERENCE_THEN_ID


def validate_allocation_config(config: AllocationConfig) -> None:
    if config.bed_reconciliation_tolerance < 0:
        raise ValueError("bed_reconciliation_tolerance must be >= 0")
    if config.floating_pca_priority_order not in PCA_PRIORITY_ORDERS:
        raise ValueError(
            "floating_pca_priority_order must be one of "
            + ", ".join(PCA_PRIORITY_ORDERS)
        )


def _is_quarter(value: float) -> bool:
    scaled = value * 4
    return math.isclose(scaled, round(scaled), abs_tol=1e-9)


def validate_fte(value: float, label: str) -> None:
    if not math.isfinite(value):
        raise PreconditionViolation(f"{label} must be finite")
    if not 0.0 <= value <= 1.0:
        raise PreconditionViolation(f"{label} must be between 0 and 1, got {value}")
    if not _is_quarter(value):
        raise PreconditionViolation(f"{label} must be a multiple of 0.25, got {value}")


def validate_slots(slots: tuple[int, ...], label: str) -> None:
    if len(set(slots)) != len(slots):
        raise PreconditionViolation(f"{label} contains duplicate slots")
    for slot in slots:
        if slot not in SLOTS:
            raise PreconditionViolation(f"{label} contains invalid slot {slot}")


def validate_staff_edit(staff_id: str, edit: StaffEdit) -> None:
    validate_fte(edit.fte_remaining, f"fte_remaining for staff {staff_id}")
    validate_slots(edit.available_slots, f"available_slots for staff {staff_id}")
    if edit.leave in _FULL_DAY_LEAVE and edit.fte_remaining > 0:
        raise PreconditionViolation(
            f"staff {staff_id} is on full-day {edit.leave.value} but has FTE {edit.fte_remaining}"
        )


def validate_therapist_override(staff_id: str, entries: tuple[TeamFTE, ...]) -> None:
    if not entries:
        raise PreconditionViolation(f"therapist override for {staff_id} must not be empty")
    for entry in entries:
        if entry.fte <= 0:
            raise PreconditionViolation(f"therapist override for {staff_id} needs FTE > 0")
        validate_fte(entry.fte, f"therapist override FTE for {staff_id}")
