"""Bed allocator: turns per-team relief targets into ward-level bed transfers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from ward_allocation.domain.errors import RECONCILIATION_OVERFLOW, ValidationIssue
from ward_allocation.domain.models import TEAMS, BedAllocation, Team, Ward
from ward_allocation.domain.rounding import round_to_nearest_integer
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)

_TEAM_INDEX = {team: index for index, team in enumerate(TEAMS)}


@dataclass(frozen=True)
class BedAllocationResult:
    allocations: tuple[BedAllocation, ...]
    reconciled_relief: dict[Team, int]
    adjusted_team: Optional[Team]
    wards_per_team: dict[Team, int]
    optimization_score: float
    issues: tuple[ValidationIssue, ...]

    @property
    def beds_released(self) -> int:
        return sum(allocation.num_beds for allocation in self.allocations)


def reconcile_relief(
    beds_for_relieving: Mapping[Team, float],
    tolerance: int,
) -> tuple[dict[Team, int], Optional[Team], list[ValidationIssue]]:
    """Make the signed relief values sum to zero.

    A net drift within ``tolerance`` is absorbed by the single team with the
    largest magnitude (earliest team wins ties). A larger drift means the
    inputs disagree and is reported, never absorbed.
    """
    values = {
        team: int(round_to_nearest_integer(beds_for_relieving.get(team, 0)))
        for team in TEAMS
    }
    net = sum(values.values())
    if net == 0:
        return values, None, []

    if abs(net) > tolerance:
        message = (
            f"bed relief does not balance: net {net:+d} beds exceeds tolerance {tolerance}"
        )
        logger.warning("Bed reconciliation overflow | net=%s | tolerance=%s", net, tolerance)
        return values, None, [ValidationIssue(code=RECONCILIATION_OVERFLOW, message=message)]

    adjusted_team = max(TEAMS, key=lambda team: (abs(values[team]), -_TEAM_INDEX[team]))
    values[adjusted_team] -= net
    logger.info(
        "Bed reconciliation absorbed remainder | team=%s | net=%s",
        adjusted_team.value,
        net,
    )
    return values, adjusted_team, []


def _score(wards_per_team: Mapping[Team, int]) -> float:
    used = [count for count in wards_per_team.values() if count > 0]
    if not used:
        return 0.0
    spread = max(used) - min(used)
    return float(sum(used) * 1000 + spread * 100)


def allocate_beds(
    beds_for_relieving: Mapping[Team, float],
    wards: Iterable[Ward] = (),
    tolerance: int = 1,
) -> BedAllocationResult:
    """Move beds from releasing teams (negative) to taking teams (positive).

    Taking teams are served largest need first, each draining releasing teams
    largest surplus first, ward by ward. Beds a releasing team cannot place in
    a known ward are transferred with ``ward=None``.
    """
    reconciled, adjusted_team, issues = reconcile_relief(beds_for_relieving, tolerance)
    ward_list = list(wards)

    surplus = {team: -beds for team, beds in reconciled.items() if beds < 0}
    taking = sorted(
        ((team, beds) for team, beds in reconciled.items() if beds > 0),
        key=lambda item: (-item[1], _TEAM_INDEX[item[0]]),
    )
    ward_capacity = {
        (ward.name, team): int(beds)
        for ward in ward_list
        for team, beds in ward.team_beds.items()
    }

    allocations: list[BedAllocation] = []
    wards_by_taker: dict[Team, set[str]] = {team: set() for team in TEAMS}

    for to_team, beds_needed in taking:
        releasing_order = sorted(
            surplus,
            key=lambda team: (-surplus[team], _TEAM_INDEX[team]),
        )
        for from_team in releasing_order:
            if beds_needed <= 0:
                break
            if surplus[from_team] <= 0:
                continue
            for ward in ward_list:
                if beds_needed <= 0 or surplus[from_team] <= 0:
                    break
                available = ward_capacity.get((ward.name, from_team), 0)
                moved = min(beds_needed, surplus[from_team], available)
                if moved <= 0:
                    continue
                allocations.append(
                    BedAllocation(
                        from_team=from_team,
                        to_team=to_team,
                        ward=ward.name,
                        num_beds=moved,
                    )
                )
                ward_capacity[(ward.name, from_team)] = available - moved
                wards_by_taker[to_team].add(ward.name)
                beds_needed -= moved
                surplus[from_team] -= moved

            moved = min(beds_needed, surplus[from_team])
            if moved > 0:
                allocations.append(
                    BedAllocation(from_team=from_team, to_team=to_team, ward=None, num_beds=moved)
                )
                beds_needed -= moved
                surplus[from_team] -= moved

    wards_per_team = {team: len(wards_by_taker[team]) for team in TEAMS}
    result = BedAllocationResult(
        allocations=tuple(allocations),
        reconciled_relief=reconciled,
        adjusted_team=adjusted_team,
        wards_per_team=wards_per_team,
        optimization_score=_score(wards_per_team),
        issues=tuple(issues),
    )
    logger.info(
        "Bed allocation completed | transfers=%s | beds_moved=%s | score=%.1f | issues=%s",
        len(result.allocations),
        result.beds_released,
        result.optimization_score,
        len(result.issues),
    )
    return result
