"""Therapist allocator: team duty, SPT add-ons and special-program duties."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping, Optional

from ward_allocation.domain.errors import (
    THERAPIST_NOT_ON_DUTY,
    THERAPIST_OVERALLOCATED,
    ValidationIssue,
)
from ward_allocation.domain.models import (
    AM_SLOTS,
    PM_SLOTS,
    TEAMS,
    DutyKind,
    SlotModes,
    SpecialProgram,
    SPTAllocation,
    Staff,
    StaffRank,
    Team,
    TeamFTE,
    TherapistAllocation,
    empty_team_map,
)
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)

_FTE_EPSILON = 1e-9


@dataclass(frozen=True)
class TherapistAllocationContext:
    weekday: str
    staff: tuple[Staff, ...]
    special_programs: tuple[SpecialProgram, ...] = ()
    spt_allocations: tuple[SPTAllocation, ...] = ()
    manual_overrides: Mapping[str, tuple[TeamFTE, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class TherapistAllocationResult:
    allocations: tuple[TherapistAllocation, ...]
    pt_per_team: dict[Team, float]
    total_pt_on_duty: float
    errors: tuple[ValidationIssue, ...]


def apply_slot_modes(
    slots: Iterable[int],
    modes: SlotModes,
    available_slots: Iterable[int],
) -> tuple[int, ...]:
    """Resolve configured SPT slots against availability and AM/PM modes.

    ``OR`` keeps only the first available slot of its half day; ``AND`` keeps
    every available slot.
    """
    available = set(available_slots)
    usable = sorted(slot for slot in set(slots) if slot in available)
    resolved: list[int] = []
    for half, mode in ((AM_SLOTS, modes.am), (PM_SLOTS, modes.pm)):
        half_slots = [slot for slot in usable if slot in half]
        if mode == "OR" and len(half_slots) > 1:
            half_slots = half_slots[:1]
        resolved.extend(half_slots)
    return tuple(resolved)


class _AllocationRun:
    """Mutable bookkeeping for one allocator pass; discarded afterwards."""

    def __init__(self, context: TherapistAllocationContext) -> None:
        self.context = context
        self.on_duty = {
            member.staff_id: member
            for member in context.staff
            if member.is_therapist and member.is_on_duty
        }
        self.roster_order = {member.staff_id: index for index, member in enumerate(context.staff)}
        self.allocations: list[TherapistAllocation] = []
        self.pt_per_team = empty_team_map()
        self.errors: list[ValidationIssue] = []

    def used_fte(self, staff_id: str) -> float:
        return sum(item.fte for item in self.allocations if item.staff_id == staff_id)

    def unassigned_fte(self, staff_id: str) -> float:
        member = self.on_duty.get(staff_id)
        if member is None:
            return 0.0
        return member.fte_remaining - self.used_fte(staff_id)

    def add(self, allocation: TherapistAllocation) -> None:
        self.allocations.append(allocation)
        self.pt_per_team[allocation.team] += allocation.fte

    def has_spt_in(self, team: Team) -> bool:
        for item in self.allocations:
            member = self.on_duty.get(item.staff_id)
            if item.team == team and member is not None and member.rank == StaffRank.SPT:
                return True
        return False


def _active_spt(context: TherapistAllocationContext, supervisors: bool) -> list[SPTAllocation]:
    return [
        item
        for item in context.spt_allocations
        if item.active
        and item.is_supervisor == supervisors
        and context.weekday in item.weekdays
        and item.slots.get(context.weekday)
    ]


def _apply_manual_overrides(run: _AllocationRun) -> None:
    for staff_id in sorted(run.context.manual_overrides):
        entries = run.context.manual_overrides[staff_id]
        member = run.on_duty.get(staff_id)
        if member is None:
            run.errors.append(
                ValidationIssue(
                    code=THERAPIST_NOT_ON_DUTY,
                    message=f"override for {staff_id} ignored: therapist is not on duty",
                )
            )
            continue
        requested = sum(entry.fte for entry in entries)
        if requested > member.fte_remaining + _FTE_EPSILON:
            run.errors.append(
                ValidationIssue(
                    code=THERAPIST_OVERALLOCATED,
                    message=(
                        f"override for {staff_id} assigns {requested:.2f} FTE "
                        f"but only {member.fte_remaining:.2f} remains"
                    ),
                )
            )
            continue
        for entry in entries:
            run.add(
                TherapistAllocation(
                    staff_id=staff_id,
                    team=entry.team,
                    duty_kind=DutyKind.ORDINARY,
                    fte=entry.fte,
                    slots={slot: entry.team for slot in member.available_slots},
                    is_manual_override=True,
                )
            )


def _apply_team_duty(run: _AllocationRun) -> None:
    spt_staff = {
        item.staff_id
        for item in run.context.spt_allocations
        if item.active and run.context.weekday in item.weekdays
    }
    overridden = {item.staff_id for item in run.allocations if item.is_manual_override}
    for member in run.context.staff:
        if member.staff_id not in run.on_duty or member.team is None:
            continue
        if member.staff_id in overridden:
            continue
        if member.staff_id in spt_staff:
            continue
        run.add(
            TherapistAllocation(
                staff_id=member.staff_id,
                team=member.team,
                duty_kind=DutyKind.ORDINARY,
                fte=member.fte_remaining,
                slots={slot: member.team for slot in member.available_slots},
            )
        )


def _choose_spt_team(run: _AllocationRun, spt: SPTAllocation, teams: Iterable[Team]) -> Optional[Team]:
    candidates = [
        team
        for team in teams
        if not any(
            item.staff_id == spt.staff_id and item.team == team for item in run.allocations
        )
    ]
    if not candidates:
        return None
    order = {team: index for index, team in enumerate(candidates)}
    return min(
        candidates,
        key=lambda team: (run.pt_per_team[team], run.has_spt_in(team), order[team]),
    )


def _add_spt(
    run: _AllocationRun,
    spt: SPTAllocation,
    team: Team,
    substitute_head: bool = False,
) -> None:
    member = run.on_duty[spt.staff_id]
    fte = min(spt.fte_addon, run.unassigned_fte(spt.staff_id))
    if fte <= _FTE_EPSILON:
        logger.info(
            "SPT add-on skipped, no FTE left | staff=%s | team=%s",
            spt.staff_id,
            team.value,
        )
        return
    modes = spt.slot_modes.get(run.context.weekday, SlotModes())
    slots = apply_slot_modes(spt.slots[run.context.weekday], modes, member.available_slots)
    run.add(
        TherapistAllocation(
            staff_id=spt.staff_id,
            team=team,
            duty_kind=DutyKind.SPT,
            fte=fte,
            slots={slot: team for slot in slots},
            is_substitute_team_head=substitute_head,
        )
    )


def _apply_spt_allocations(run: _AllocationRun) -> None:
    for spt in _active_spt(run.context, supervisors=False):
        if spt.staff_id not in run.on_duty:
            continue
        team = _choose_spt_team(run, spt, spt.teams)
        if team is not None:
            _add_spt(run, spt, team)


def _teams_without_head(run: _AllocationRun) -> list[Team]:
    headed = {
        member.team
        for member in run.on_duty.values()
        if member.rank == StaffRank.APPT and member.team is not None
    }
    return [team for team in TEAMS if team not in headed]


def _apply_supervisors(run: _AllocationRun) -> None:
    for spt in _active_spt(run.context, supervisors=True):
        if spt.staff_id not in run.on_duty:
            continue
        if any(item.staff_id == spt.staff_id for item in run.allocations):
            continue
        headless = _teams_without_head(run)
        if headless:
            _add_spt(run, spt, headless[0], substitute_head=True)
            continue
        team = _choose_spt_team(run, spt, spt.teams or TEAMS)
        if team is not None:
            _add_spt(run, spt, team)


def _apply_program_subtractions(run: _AllocationRun) -> None:
    weekday = run.context.weekday
    for program in run.context.special_programs:
        if weekday not in program.weekdays:
            continue
        by_team: dict[Team, list[int]] = {}
        seen: set[str] = set()
        for index, allocation in enumerate(run.allocations):
            if allocation.staff_id in seen or allocation.staff_id not in program.staff_ids:
                continue
            seen.add(allocation.staff_id)
            if program.subtraction_for(allocation.staff_id, weekday) > 0:
                by_team.setdefault(allocation.team, []).append(index)

        for team in TEAMS:
            indices = by_team.get(team)
            if not indices:
                continue
            preference = list(program.therapist_preference_order.get(team, ()))
            indices.sort(
                key=lambda i: (
                    preference.index(run.allocations[i].staff_id)
                    if run.allocations[i].staff_id in preference
                    else len(preference),
                    run.roster_order.get(run.allocations[i].staff_id, len(run.roster_order)),
                )
            )
            for index in indices:
                allocation = run.allocations[index]
                subtraction = program.subtraction_for(allocation.staff_id, weekday)
                if allocation.fte + _FTE_EPSILON < subtraction:
                    logger.info(
                        "Program skipped, therapist lacks FTE | program=%s | staff=%s | fte=%.2f",
                        program.program_id,
                        allocation.staff_id,
                        allocation.fte,
                    )
                    continue
                run.allocations[index] = replace(
                    allocation,
                    fte=allocation.fte - subtraction,
                    duty_kind=DutyKind.SPECIAL_PROGRAM,
                    program_ids=allocation.program_ids + (program.program_id,),
                )
                run.pt_per_team[team] -= subtraction
                break


def allocate_therapists(context: TherapistAllocationContext) -> TherapistAllocationResult:
    """Run the therapist passes in their fixed order.

    Manual overrides, then home-team duty, then SPT add-ons, then supervisor
    substitution, then special-program subtractions. Off-duty therapists are
    removed before the first pass.
    """
    run = _AllocationRun(context)
    _apply_manual_overrides(run)
    _apply_team_duty(run)
    _apply_spt_allocations(run)
    _apply_supervisors(run)
    _apply_program_subtractions(run)

    total_pt = sum(run.pt_per_team.values())
    logger.info(
        "Therapist allocation completed | weekday=%s | allocations=%s | total_pt=%.2f | errors=%s",
        context.weekday,
        len(run.allocations),
        total_pt,
        len(run.errors),
    )
    return TherapistAllocationResult(
        allocations=tuple(run.allocations),
        pt_per_team=dict(run.pt_per_team),
        total_pt_on_duty=total_pt,
        errors=tuple(run.errors),
    )
