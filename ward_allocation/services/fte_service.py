"""FTE calculator: proportional bed and PCA targets per team."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from ward_allocation.domain.errors import PreconditionViolation
from ward_allocation.domain.models import TEAMS, Staff, Team, Ward, empty_team_map
from ward_allocation.domain.rounding import round_to_nearest_integer, round_to_nearest_quarter


@dataclass(frozen=True)
class FTECalculationInput:
    total_beds: float
    total_pt_on_duty: float
    beds_per_team: Mapping[Team, float]
    pt_per_team: Mapping[Team, float]


@dataclass(frozen=True)
class FTECalculationResult:
    beds_per_pt: float
    beds_for_relieving: dict[Team, int]
    expected_beds_per_team: dict[Team, float]


@dataclass(frozen=True)
class OnDutySummary:
    pt_per_team: dict[Team, float]
    total_pt_on_duty: float
    pca_per_team: dict[Team, float]
    total_pca_on_duty: float


def _require_positive(value: float, label: str) -> None:
    if not value > 0:
        raise PreconditionViolation(f"{label} must be > 0, got {value}")


def calculate_fte(payload: FTECalculationInput) -> FTECalculationResult:
    """Compute each team's bed surplus (negative) or deficit (positive).

    A team's fair share is ``beds_per_pt * pt_per_team``; the difference to its
    designated beds is what it should receive (positive) or release (negative).
    """
    _require_positive(payload.total_pt_on_duty, "total_pt_on_duty")
    beds_per_pt = payload.total_beds / payload.total_pt_on_duty

    beds_for_relieving: dict[Team, int] = {}
    expected_beds: dict[Team, float] = {}
    for team in TEAMS:
        expected = beds_per_pt * payload.pt_per_team.get(team, 0.0)
        expected_beds[team] = expected
        beds_for_relieving[team] = int(
            round_to_nearest_integer(expected - payload.beds_per_team.get(team, 0.0))
        )

    return FTECalculationResult(
        beds_per_pt=beds_per_pt,
        beds_for_relieving=beds_for_relieving,
        expected_beds_per_team=expected_beds,
    )


def calculate_pca_fte(
    total_beds: float,
    total_pca_on_duty: float,
    pt_per_team: Mapping[Team, float],
    beds_per_pt: float,
) -> dict[Team, float]:
    """Average PCA per team, rounded to the quarter FTE a PCA slot represents."""
    _require_positive(total_pca_on_duty, "total_pca_on_duty")
    _require_positive(total_beds, "total_beds")
    beds_per_pca = total_beds / total_pca_on_duty
    return {
        team: round_to_nearest_quarter(beds_per_pt * pt_per_team.get(team, 0.0) / beds_per_pca)
        for team in TEAMS
    }


def summarize_on_duty(staff: Iterable[Staff]) -> OnDutySummary:
    """Sum on-duty therapist and PCA FTE per home team."""
    pt_per_team = empty_team_map()
    pca_per_team = empty_team_map()
    total_pca = 0.0
    for member in staff:
        if not member.is_on_duty:
            continue
        if member.is_therapist and member.team is not None:
            pt_per_team[member.team] += member.fte_remaining
        elif member.is_pca:
            total_pca += member.fte_remaining
            if member.team is not None and not member.floating:
                pca_per_team[member.team] += member.fte_remaining
    return OnDutySummary(
        pt_per_team=pt_per_team,
        total_pt_on_duty=sum(pt_per_team.values()),
        pca_per_team=pca_per_team,
        total_pca_on_duty=total_pca,
    )


def beds_per_team_from_wards(
    wards: Iterable[Ward],
    bed_edits: Mapping[Team, int] | None = None,
) -> dict[Team, int]:
    """Designated beds per team; an explicit ward-bed edit replaces the ward sum."""
    totals = {team: 0 for team in TEAMS}
    for ward in wards:
        for team, beds in ward.team_beds.items():
            totals[team] += int(beds)
    for team, beds in (bed_edits or {}).items():
        totals[team] = int(beds)
    return totals
