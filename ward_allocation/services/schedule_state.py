"""Saved / Algorithm / Override layers and how they compose."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, TypeVar

from ward_allocation.domain.models import (
    ScheduleCalculations,
    StaffEdit,
    Team,
    TeamFTE,
    TherapistAllocation,
    TieBreakDecision,
)
from ward_allocation.services.schedule_engine import ScheduleInputs


K = TypeVar("K")
V = TypeVar("V")


@dataclass(frozen=True)
class SavedState:
    """Durable snapshot written by a successful save."""

    date_key: str
    step: str
    revision: int = 0
    saved_at: Optional[str] = None
    staff_edits: Mapping[str, StaffEdit] = field(default_factory=dict)
    ward_bed_edits: Mapping[Team, int] = field(default_factory=dict)
    therapist_overrides: Mapping[str, tuple[TeamFTE, ...]] = field(default_factory=dict)
    pca_slot_edits: Mapping[str, Mapping[int, Team]] = field(default_factory=dict)
    tie_break_decisions: Mapping[str, TieBreakDecision] = field(default_factory=dict)
    calculations: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class OverrideState:
    """User edits accumulated since the last successful save."""

    staff_edits: Mapping[str, StaffEdit] = field(default_factory=dict)
    ward_bed_edits: Mapping[Team, int] = field(default_factory=dict)
    therapist_overrides: Mapping[str, tuple[TeamFTE, ...]] = field(default_factory=dict)
    pca_slot_edits: Mapping[str, Mapping[int, Team]] = field(default_factory=dict)
    tie_break_decisions: Mapping[str, TieBreakDecision] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (
            self.staff_edits
            or self.ward_bed_edits
            or self.therapist_overrides
            or self.pca_slot_edits
            or self.tie_break_decisions
        )

    def without(self, persisted: "OverrideState") -> "OverrideState":
        """Drop entries whose value is exactly what ``persisted`` wrote.

        Entries edited again after the snapshot was taken differ from it and
        therefore survive for the next save.
        """
        return OverrideState(
            staff_edits=_unsaved(self.staff_edits, persisted.staff_edits),
            ward_bed_edits=_unsaved(self.ward_bed_edits, persisted.ward_bed_edits),
            therapist_overrides=_unsaved(self.therapist_overrides, persisted.therapist_overrides),
            pca_slot_edits=_unsaved(self.pca_slot_edits, persisted.pca_slot_edits),
            tie_break_decisions=_unsaved(self.tie_break_decisions, persisted.tie_break_decisions),
        )

    def without_floating_decisions(self) -> "OverrideState":
        return OverrideState(
            staff_edits=self.staff_edits,
            ward_bed_edits=self.ward_bed_edits,
            therapist_overrides=self.therapist_overrides,
            pca_slot_edits=self.pca_slot_edits,
        )


def _unsaved(current: Mapping[K, V], persisted: Mapping[K, V]) -> dict[K, V]:
    return {
        key: value
        for key, value in current.items()
        if key not in persisted or persisted[key] != value
    }


def _overlay(base: Mapping[K, V], top: Mapping[K, V]) -> dict[K, V]:
    merged = dict(base)
    merged.update(top)
    return merged


def compose_inputs(saved: Optional[SavedState], override: OverrideState) -> ScheduleInputs:
    """Raw inputs for the next run: override values win per key."""
    if saved is None:
        saved = SavedState(date_key="", step="")
    return ScheduleInputs(
        staff_edits=_overlay(saved.staff_edits, override.staff_edits),
        ward_bed_edits=_overlay(saved.ward_bed_edits, override.ward_bed_edits),
        therapist_overrides=_overlay(saved.therapist_overrides, override.therapist_overrides),
        pca_slot_edits=_overlay(saved.pca_slot_edits, override.pca_slot_edits),
        tie_break_decisions=_overlay(saved.tie_break_decisions, override.tie_break_decisions),
    )


def fold_into_saved(
    saved: Optional[SavedState],
    snapshot: OverrideState,
    date_key: str,
    step: str,
    saved_at: str,
    calculations: Optional[Mapping[str, Any]] = None,
) -> SavedState:
    """The Saved State a save of ``snapshot`` produces."""
    inputs = compose_inputs(saved, snapshot)
    return SavedState(
        date_key=date_key,
        step=step,
        revision=(saved.revision if saved else 0) + 1,
        saved_at=saved_at,
        staff_edits=inputs.staff_edits,
        ward_bed_edits=inputs.ward_bed_edits,
        therapist_overrides=inputs.therapist_overrides,
        pca_slot_edits=inputs.pca_slot_edits,
        tie_break_decisions=inputs.tie_break_decisions,
        calculations=calculations,
    )


@dataclass(frozen=True)
class MergedSchedule:
    """What the operator sees: override values over the computed ones."""

    beds_per_team: dict[Team, int]
    therapist_allocations: tuple[TherapistAllocation, ...]
    pca_slots: dict[str, dict[int, Team]]


def merge_layers(algorithm: ScheduleCalculations, override: OverrideState) -> MergedSchedule:
    """Overlay the override layer on an Algorithm State computed from it.

    Therapist overrides are already applied by the algorithm pass, which drops
    staff who are not on duty; they are taken from there unchanged.
    """
    beds = _overlay(algorithm.beds_per_team, override.ward_bed_edits)

    pca_slots = {
        allocation.staff_id: dict(allocation.slots) for allocation in algorithm.pca_allocations
    }
    for staff_id, slots in override.pca_slot_edits.items():
        pca_slots[staff_id] = _overlay(pca_slots.get(staff_id, {}), slots)

    return MergedSchedule(
        beds_per_team=dict(beds),
        therapist_allocations=tuple(algorithm.therapist_allocations),
        pca_slots=pca_slots,
    )
