"""PCA allocators: the fixed non-floating pass and the slot-based floating pass.

Floating PCAs are handed out in quarter-FTE slot units. Each team's target is
its average PCA share; non-floating PCAs and manual slot edits count against
it first, then the floating pool is spent in two rounds:

* floor-match: every whole PCA a team still needs is served by a floating PCA
  that is free for all four slots. Teams are served largest need first and,
  on equal need, in team order; a team left short here competes again in the
  remainder round, where ties are escalated;
* remainder: what is left is served one slot at a time to the team with the
  largest outstanding need.

When several teams share the largest need and the free slots left in the pool
cannot cover all of them, the allocator does not pick a winner. It emits a
``TieBreakRequest``, parks those teams and reserves the contested PCAs so the
rest of the run can still finish. A matching ``TieBreakDecision`` (same
context key) hands the contested PCAs to the chosen team on the next run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

from ward_allocation.domain.constraints import PRIORITY_PREFERENCE_THEN_ID, PRIORITY_STAFF_ID
from ward_allocation.domain.errors import UNMET_PCA_NEED, PreconditionViolation, ValidationIssue
from ward_allocation.domain.models import (
    SLOTS,
    TEAMS,
    AssignmentOutcome,
    AssignmentPhase,
    PCAAllocation,
    PCAPreference,
    SlotAssignmentLog,
    Staff,
    Team,
    TeamAllocationLog,
    TieBreakDecision,
    TieBreakRequest,
)
from ward_allocation.domain.rounding import (
    QUARTER,
    round_to_nearest_quarter_with_midpoint,
    to_slot_units,
)
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class PCAAllocationContext:
    staff: tuple[Staff, ...]
    average_pca_per_team: Mapping[Team, float]
    pca_preferences: tuple[PCAPreference, ...] = ()
    manual_slot_edits: Mapping[str, Mapping[int, Team]] = field(default_factory=dict)
    tie_break_decisions: Mapping[str, TieBreakDecision] = field(default_factory=dict)
    priority_order: str = PRIORITY_PREFERENCE_THEN_ID
    include_floating: bool = True


@dataclass(frozen=True)
class PCAAllocationResult:
    allocations: tuple[PCAAllocation, ...]
    pending_per_team: dict[Team, float]
    team_logs: tuple[TeamAllocationLog, ...]
    tie_break_requests: tuple[TieBreakRequest, ...]
    issues: tuple[ValidationIssue, ...]


def tie_break_context_key(
    phase: AssignmentPhase,
    teams: Iterable[Team],
    pca_ids: Iterable[str],
) -> str:
    """Stable identity of one ambiguous assignment.

    Built from the phase, the tied teams and the contested PCAs only, so the
    same tie on a re-run maps to the same decision.
    """
    team_part = ",".join(sorted(team.value for team in teams))
    pca_part = ",".join(sorted(pca_ids))
    return f"{phase.value}|{team_part}|{pca_part}"


class AllocationTracker:
    """Per-run target vs assigned counters and the append-only audit trail."""

    def __init__(self, targets: Mapping[Team, float]) -> None:
        self.target_units = {
            team: max(0, to_slot_units(round_to_nearest_quarter_with_midpoint(targets.get(team, 0.0))))
            for team in TEAMS
        }
        self.assigned_units = {team: 0 for team in TEAMS}
        self._entries: dict[Team, list[SlotAssignmentLog]] = {team: [] for team in TEAMS}
        self._order = 0

    def pending_units(self, team: Team) -> int:
        return max(0, self.target_units[team] - self.assigned_units[team])

    def pending_fte(self, team: Team) -> float:
        return self.pending_units(team) * QUARTER

    def _next_order(self) -> int:
        self._order += 1
        return self._order

    def record_assignment(
        self,
        team: Team,
        slot: int,
        pca_id: str,
        phase: AssignmentPhase,
        reason: str,
        was_preferred_pca: bool = False,
        was_preferred_slot: bool = False,
    ) -> None:
        self.assigned_units[team] += 1
        self._entries[team].append(
            SlotAssignmentLog(
                slot=slot,
                pca_id=pca_id,
                team=team,
                phase=phase,
                outcome=AssignmentOutcome.ASSIGNED,
                reason=reason,
                allocation_order=self._next_order(),
                was_preferred_pca=was_preferred_pca,
                was_preferred_slot=was_preferred_slot,
            )
        )

    def record_skip(
        self,
        team: Team,
        phase: AssignmentPhase,
        reason: str,
        pca_id: Optional[str] = None,
        slot: Optional[int] = None,
    ) -> None:
        self._entries[team].append(
            SlotAssignmentLog(
                slot=slot,
                pca_id=pca_id,
                team=team,
                phase=phase,
                outcome=AssignmentOutcome.SKIPPED,
                reason=reason,
                allocation_order=self._next_order(),
            )
        )

    def team_logs(self) -> tuple[TeamAllocationLog, ...]:
        return tuple(
            TeamAllocationLog(
                team=team,
                assignments=tuple(self._entries[team]),
                target_fte=self.target_units[team] * QUARTER,
                assigned_fte=self.assigned_units[team] * QUARTER,
                pending_fte=self.pending_fte(team),
            )
            for team in TEAMS
        )


class _PCASlots:
    """Working copy of one on-duty PCA's day."""

    def __init__(self, member: Staff) -> None:
        self.member = member
        self.capacity = min(len(member.available_slots), to_slot_units(member.fte_remaining))
        self.slots: dict[int, Team] = {}

    @property
    def staff_id(self) -> str:
        return self.member.staff_id

    @property
    def free_units(self) -> int:
        return self.capacity - len(self.slots)

    def free_slots(self) -> list[int]:
        if self.free_units <= 0:
            return []
        return [slot for slot in SLOTS if slot in self.member.available_slots and slot not in self.slots]

    def is_whole(self) -> bool:
        return not self.slots and self.capacity == len(SLOTS)

    def assign(self, slot: int, team: Team) -> None:
        if slot not in self.member.available_slots:
            raise PreconditionViolation(
                f"slot {slot} is outside the availability of PCA {self.staff_id}"
            )
        if slot in self.slots:
            raise PreconditionViolation(f"slot {slot} of PCA {self.staff_id} is already assigned")
        if self.free_units <= 0:
            raise PreconditionViolation(f"PCA {self.staff_id} has no FTE left for slot {slot}")
        self.slots[slot] = team

    def to_allocation(self) -> Optional[PCAAllocation]:
        if not self.slots:
            return None
        ordered = dict(sorted(self.slots.items()))
        teams = list(ordered.values())
        home = self.member.team if not self.member.floating and self.member.team else teams[0]
        assigned = len(ordered) * QUARTER
        return PCAAllocation(
            staff_id=self.staff_id,
            team=home,
            slots=ordered,
            is_floating=self.member.floating,
            fte_assigned=assigned,
            fte_remaining=max(0.0, self.member.fte_remaining - assigned),
        )


class _FloatingRun:
    def __init__(self, context: PCAAllocationContext, tracker: AllocationTracker) -> None:
        self.context = context
        self.tracker = tracker
        self.preferences = {item.team: item for item in context.pca_preferences}
        self.pcas: dict[str, _PCASlots] = {}
        for member in sorted(context.staff, key=lambda item: item.staff_id):
            if member.is_pca and member.is_on_duty:
                self.pcas[member.staff_id] = _PCASlots(member)
        self.suspended: set[Team] = set()
        self.exhausted: set[Team] = set()
        self.reserved: set[str] = set()
        self.requests: list[TieBreakRequest] = []

    def floating(self) -> list[_PCASlots]:
        return [item for item in self.pcas.values() if item.member.floating]

    def pool_for(self, team: Optional[Team]) -> list[_PCASlots]:
        pool = [
            item
            for item in self.floating()
            if item.free_units > 0 and item.staff_id not in self.reserved
        ]
        if self.context.priority_order == PRIORITY_STAFF_ID or team is None:
            return pool
        preferred = self.preferred_pcas(team)
        rank = {staff_id: index for index, staff_id in enumerate(preferred)}
        return sorted(pool, key=lambda item: (rank.get(item.staff_id, len(rank)), item.staff_id))

    def preferred_pcas(self, team: Team) -> tuple[str, ...]:
        preference = self.preferences.get(team)
        return preference.preferred_pca_ids if preference else ()

    def allowed_slots(self, team: Team, pca: _PCASlots) -> list[int]:
        preference = self.preferences.get(team)
        free = pca.free_slots()
        if preference and preference.avoid_gym_schedule and preference.gym_slot is not None:
            free = [slot for slot in free if slot != preference.gym_slot]
        return free

    # -- passes -------------------------------------------------------------

    def non_floating(self) -> None:
        for pca in self.pcas.values():
            member = pca.member
            if member.floating or member.team is None:
                continue
            for slot in pca.free_slots():
                if pca.free_units <= 0:
                    break
                pca.assign(slot, member.team)
                self.tracker.record_assignment(
                    member.team,
                    slot,
                    member.staff_id,
                    AssignmentPhase.NON_FLOATING,
                    "home team PCA",
                )

    def manual_overrides(self) -> None:
        for staff_id in sorted(self.context.manual_slot_edits):
            pca = self.pcas.get(staff_id)
            if pca is None:
                raise PreconditionViolation(f"PCA {staff_id} is not an on-duty PCA")
            if not pca.member.floating:
                raise PreconditionViolation(f"PCA {staff_id} is non-floating and keeps its home team")
            for slot, team in sorted(self.context.manual_slot_edits[staff_id].items()):
                pca.assign(slot, team)
                self.tracker.record_assignment(
                    team,
                    slot,
                    staff_id,
                    AssignmentPhase.MANUAL_OVERRIDE,
                    "manual slot edit",
                )

    def floor_match(self) -> None:
        slots_per_pca = len(SLOTS)
        teams = sorted(TEAMS, key=lambda team: -self.tracker.pending_units(team))
        for team in teams:
            while self.tracker.pending_units(team) >= slots_per_pca:
                whole = next((item for item in self.pool_for(team) if item.is_whole()), None)
                if whole is None:
                    self.tracker.record_skip(
                        team,
                        AssignmentPhase.FLOOR_MATCH,
                        "no floating PCA free for all four slots",
                    )
                    break
                preferred = whole.staff_id in self.preferred_pcas(team)
                for slot in SLOTS:
                    whole.assign(slot, team)
                    self.tracker.record_assignment(
                        team,
                        slot,
                        whole.staff_id,
                        AssignmentPhase.FLOOR_MATCH,
                        "whole PCA for whole-unit need",
                        was_preferred_pca=preferred,
                    )

    def _assign_one(self, team: Team, phase: AssignmentPhase, pool: list[_PCASlots]) -> bool:
        preference = self.preferences.get(team)
        preferred_slots = preference.preferred_slots if preference else ()
        preferred_pcas = self.preferred_pcas(team)

        choice: Optional[tuple[_PCASlots, int]] = None
        for pca in pool:
            allowed = self.allowed_slots(team, pca)
            hit = next((slot for slot in preferred_slots if slot in allowed), None)
            if hit is not None:
                choice = (pca, hit)
                break
        if choice is None:
            for pca in pool:
                allowed = self.allowed_slots(team, pca)
                if allowed:
                    choice = (pca, allowed[0])
                    break
        if choice is None:
            return False

        pca, slot = choice
        pca.assign(slot, team)
        reason = "tie-break decision" if phase == AssignmentPhase.TIE_BREAK else "largest remaining need"
        self.tracker.record_assignment(
            team,
            slot,
            pca.staff_id,
            phase,
            reason,
            was_preferred_pca=pca.staff_id in preferred_pcas,
            was_preferred_slot=slot in preferred_slots,
        )
        return True

    def _serve_decision(self, team: Team, contested: list[_PCASlots]) -> None:
        contested_ids = {item.staff_id for item in contested}
        while self.tracker.pending_units(team) > 0:
            pool = [
                item
                for item in self.pool_for(team)
                if item.staff_id in contested_ids
            ]
            if not self._assign_one(team, AssignmentPhase.TIE_BREAK, pool):
                break

    def remainder(self) -> None:
        while True:
            candidates = [
                team
                for team in TEAMS
                if team not in self.suspended
                and team not in self.exhausted
                and self.tracker.pending_units(team) > 0
            ]
            if not candidates:
                return
            if not self.pool_for(None):
                for team in candidates:
                    self.tracker.record_skip(
                        team,
                        AssignmentPhase.REMAINDER,
                        "no floating PCA slots left",
                    )
                return

            top = max(self.tracker.pending_units(team) for team in candidates)
            tied = [team for team in candidates if self.tracker.pending_units(team) == top]
            contested = self.pool_for(None)
            free_units = sum(item.free_units for item in contested)
            if len(tied) > 1 and free_units < top * len(tied):
                contested_ids = [item.staff_id for item in contested]
                key = tie_break_context_key(AssignmentPhase.REMAINDER, tied, contested_ids)
                decision = self.context.tie_break_decisions.get(key)
                if decision is not None and decision.chosen_team in tied:
                    self._serve_decision(decision.chosen_team, contested)
                    self.exhausted.add(decision.chosen_team)
                    for team in tied:
                        if team != decision.chosen_team:
                            self.tracker.record_skip(
                                team,
                                AssignmentPhase.TIE_BREAK,
                                f"tie decided for {decision.chosen_team.value}",
                            )
                    continue
                self._emit_tie(key, tied, contested_ids, top)
                continue

            team = tied[0]
            if not self._assign_one(team, AssignmentPhase.REMAINDER, self.pool_for(team)):
                self.exhausted.add(team)
                self.tracker.record_skip(
                    team,
                    AssignmentPhase.REMAINDER,
                    "no usable slot on remaining floating PCAs",
                )

    def _emit_tie(self, key: str, tied: list[Team], pca_ids: list[str], units: int) -> None:
        request = TieBreakRequest(
            context_key=key,
            tied_teams=tuple(tied),
            candidate_pca_ids=tuple(sorted(pca_ids)),
            pending_fte=units * QUARTER,
            phase=AssignmentPhase.REMAINDER,
        )
        self.requests.append(request)
        self.suspended.update(tied)
        self.reserved.update(pca_ids)
        for team in tied:
            self.tracker.record_skip(
                team,
                AssignmentPhase.TIE_BREAK,
                "awaiting tie-break decision",
            )
        logger.info(
            "Tie-break requested | key=%s | teams=%s | pcas=%s",
            key,
            ",".join(team.value for team in tied),
            ",".join(request.candidate_pca_ids),
        )


def allocate_pcas(context: PCAAllocationContext) -> PCAAllocationResult:
    """Run the non-floating pass and, when enabled, the floating passes.

    Raises ``PreconditionViolation`` when a manual slot edit falls outside a
    PCA's availability or targets a PCA that is not on duty and floating.
    """
    tracker = AllocationTracker(context.average_pca_per_team)
    run = _FloatingRun(context, tracker)
    run.non_floating()
    if context.include_floating:
        run.manual_overrides()
        run.floor_match()
        run.remainder()

    allocations = tuple(
        allocation
        for allocation in (pca.to_allocation() for pca in run.pcas.values())
        if allocation is not None
    )
    pending = {team: tracker.pending_fte(team) for team in TEAMS}
    issues: list[ValidationIssue] = []
    if context.include_floating:
        for team in TEAMS:
            if pending[team] > 0 and team not in run.suspended:
                issues.append(
                    ValidationIssue(
                        code=UNMET_PCA_NEED,
                        message=f"team {team.value} still needs {pending[team]:.2f} PCA FTE",
                        blocking=False,
                    )
                )

    logger.info(
        "PCA allocation completed | floating=%s | allocations=%s | tie_breaks=%s | pending_fte=%.2f",
        context.include_floating,
        len(allocations),
        len(run.requests),
        sum(pending.values()),
    )
    return PCAAllocationResult(
        allocations=allocations,
        pending_per_team=pending,
        team_logs=tracker.team_logs(),
        tie_break_requests=tuple(run.requests),
        issues=tuple(issues),
    )
