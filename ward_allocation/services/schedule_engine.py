"""One deterministic computation pass per schedule date.

FTE calculator -> bed allocator -> therapist allocator -> PCA allocator. The
result is a fresh ``ScheduleCalculations`` (the Algorithm State); nothing
here reads clocks or random sources, so identical inputs give equal output.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass, replace
from enum import Enum
from typing import Any, Iterable, Mapping

from ward_allocation.domain.constraints import (
    AllocationConfig,
    validate_allocation_config,
    validate_staff_edit,
    validate_therapist_override,
)
from ward_allocation.domain.errors import PreconditionViolation
from ward_allocation.domain.models import (
    RosterSnapshot,
    ScheduleCalculations,
    Staff,
    StaffEdit,
    Team,
    TeamFTE,
    TieBreakDecision,
    weekday_for,
)
from ward_allocation.services.bed_service import allocate_beds
from ward_allocation.services.fte_service import (
    FTECalculationInput,
    beds_per_team_from_wards,
    calculate_fte,
    calculate_pca_fte,
    summarize_on_duty,
)
from ward_allocation.services.pca_service import PCAAllocationContext, allocate_pcas
from ward_allocation.services.therapist_service import (
    TherapistAllocationContext,
    allocate_therapists,
)
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class ScheduleInputs:
    """The composed raw inputs for one run (saved values overlaid by edits)."""

    staff_edits: Mapping[str, StaffEdit] = field(default_factory=dict)
    ward_bed_edits: Mapping[Team, int] = field(default_factory=dict)
    therapist_overrides: Mapping[str, tuple[TeamFTE, ...]] = field(default_factory=dict)
    pca_slot_edits: Mapping[str, Mapping[int, Team]] = field(default_factory=dict)
    tie_break_decisions: Mapping[str, TieBreakDecision] = field(default_factory=dict)


def apply_staff_edits(staff: Iterable[Staff], edits: Mapping[str, StaffEdit]) -> tuple[Staff, ...]:
    """Return the day's staff records; roster records are never mutated."""
    roster = tuple(staff)
    known = {member.staff_id for member in roster}
    unknown = sorted(set(edits) - known)
    if unknown:
        raise PreconditionViolation(f"edits reference unknown staff: {', '.join(unknown)}")

    updated: list[Staff] = []
    for member in roster:
        edit = edits.get(member.staff_id)
        if edit is None:
            updated.append(member)
            continue
        validate_staff_edit(member.staff_id, edit)
        updated.append(
            replace(
                member,
                leave=edit.leave,
                fte_remaining=edit.fte_remaining,
                available_slots=tuple(sorted(edit.available_slots)),
            )
        )
    return tuple(updated)


def compute_schedule(
    date_key: str,
    roster: RosterSnapshot,
    inputs: ScheduleInputs,
    config: AllocationConfig = AllocationConfig(),
    include_floating: bool = True,
) -> ScheduleCalculations:
    """Build the Algorithm State for ``date_key``.

    Raises ``PreconditionViolation`` when the day has no beds or no on-duty
    therapists or PCAs, or when an edit is malformed.
    """
    validate_allocation_config(config)
    for staff_id, entries in inputs.therapist_overrides.items():
        validate_therapist_override(staff_id, entries)

    staff = apply_staff_edits(roster.staff, inputs.staff_edits)
    beds_per_team = beds_per_team_from_wards(roster.wards, inputs.ward_bed_edits)
    total_beds = sum(beds_per_team.values())
    summary = summarize_on_duty(staff)

    fte = calculate_fte(
        FTECalculationInput(
            total_beds=total_beds,
            total_pt_on_duty=summary.total_pt_on_duty,
            beds_per_team=beds_per_team,
            pt_per_team=summary.pt_per_team,
        )
    )
    average_pca = calculate_pca_fte(
        total_beds=total_beds,
        total_pca_on_duty=summary.total_pca_on_duty,
        pt_per_team=summary.pt_per_team,
        beds_per_pt=fte.beds_per_pt,
    )

    beds = allocate_beds(
        fte.beds_for_relieving,
        roster.wards,
        tolerance=config.bed_reconciliation_tolerance,
    )
    therapists = allocate_therapists(
        TherapistAllocationContext(
            weekday=weekday_for(date_key),
            staff=staff,
            special_programs=roster.special_programs,
            spt_allocations=roster.spt_allocations,
            manual_overrides=inputs.therapist_overrides,
        )
    )
    pcas = allocate_pcas(
        PCAAllocationContext(
            staff=staff,
            average_pca_per_team=average_pca,
            pca_preferences=roster.pca_preferences,
            manual_slot_edits=inputs.pca_slot_edits if include_floating else {},
            tie_break_decisions=inputs.tie_break_decisions,
            priority_order=config.floating_pca_priority_order,
            include_floating=include_floating,
        )
    )

    calculations = ScheduleCalculations(
        date_key=date_key,
        total_beds=total_beds,
        beds_per_team=beds_per_team,
        total_pt_on_duty=summary.total_pt_on_duty,
        pt_per_team=summary.pt_per_team,
        beds_per_pt=fte.beds_per_pt,
        beds_for_relieving=beds.reconciled_relief,
        total_pca_on_duty=summary.total_pca_on_duty,
        average_pca_per_team=average_pca,
        bed_allocations=beds.allocations,
        bed_optimization_score=beds.optimization_score,
        therapist_allocations=therapists.allocations,
        therapist_pt_per_team=therapists.pt_per_team,
        pca_allocations=pcas.allocations,
        pending_pca_per_team=pcas.pending_per_team,
        team_logs=pcas.team_logs,
        tie_break_requests=pcas.tie_break_requests,
        issues=beds.issues + therapists.errors + pcas.issues,
    )
    logger.info(
        "Schedule computed | date=%s | beds=%s | pt=%.2f | pca=%.2f | issues=%s | tie_breaks=%s",
        date_key,
        total_beds,
        summary.total_pt_on_duty,
        summary.total_pca_on_duty,
        len(calculations.issues),
        len(calculations.tie_break_requests),
    )
    return calculations


def to_jsonable(value: Any) -> Any:
    """Convert engine records into plain JSON types with stable key order."""
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {item.name: to_jsonable(getattr(value, item.name)) for item in fields(value)}
    if isinstance(value, Mapping):
        return {
            str(to_jsonable(key)): to_jsonable(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [to_jsonable(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items.sort()
        return items
    return value


def calculations_payload(calculations: ScheduleCalculations) -> str:
    return json.dumps(to_jsonable(calculations), sort_keys=True, separators=(",", ":"))
