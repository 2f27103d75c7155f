from __future__ import annotations

import pytest

from ward_allocation.domain.errors import PreconditionViolation
from ward_allocation.domain.models import LeaveKind, Staff, StaffRank, Team, Ward
from ward_allocation.services.fte_service import (
    FTECalculationInput,
    beds_per_team_from_wards,
    calculate_fte,
    calculate_pca_fte,
    summarize_on_duty,
)


def _payload(**overrides) -> FTECalculationInput:
    values = {
        "total_beds": 80,
        "total_pt_on_duty": 10,
        "beds_per_team": {Team.FO: 20, Team.SMM: 60},
        "pt_per_team": {Team.FO: 3, Team.SMM: 7},
    }
    values.update(overrides)
    return FTECalculationInput(**values)


def test_worked_example_relief_targets() -> None:
    result = calculate_fte(_payload())

    assert result.beds_per_pt == 8
    assert result.beds_for_relieving[Team.FO] == 4
    assert result.beds_for_relieving[Team.SMM] == -4
    assert set(result.beds_for_relieving) == set(Team)
    assert result.expected_beds_per_team[Team.FO] == pytest.approx(24.0)


@pytest.mark.parametrize(
    ("total_beds", "pt_per_team", "beds_per_team"),
    [
        (97, {Team.FO: 2.5, Team.SMM: 3, Team.MC: 1.75}, {Team.FO: 40, Team.SMM: 30, Team.MC: 27}),
        (61, {Team.GMC: 1, Team.NSM: 1, Team.DRO: 1}, {Team.GMC: 20, Team.NSM: 20, Team.DRO: 21}),
        (120, {team: 1.25 for team in Team}, {team: 15 for team in Team}),
    ],
)
def test_relief_conserves_beds_within_one(total_beds, pt_per_team, beds_per_team) -> None:
    result = calculate_fte(
        FTECalculationInput(
            total_beds=total_beds,
            total_pt_on_duty=sum(pt_per_team.values()),
            beds_per_team=beds_per_team,
            pt_per_team=pt_per_team,
        )
    )
    assert abs(sum(result.beds_for_relieving.values())) <= 1


def test_zero_on_duty_therapists_is_a_precondition_violation() -> None:
    with pytest.raises(PreconditionViolation):
        calculate_fte(_payload(total_pt_on_duty=0))


def test_pca_targets_are_quarter_rounded() -> None:
    targets = calculate_pca_fte(
        total_beds=80,
        total_pca_on_duty=5,
        pt_per_team={Team.FO: 3, Team.SMM: 7},
        beds_per_pt=8,
    )
    # beds_per_pca = 16: FO 24 / 16 = 1.5, SMM 56 / 16 = 3.5
    assert targets[Team.FO] == 1.5
    assert targets[Team.SMM] == 3.5
    assert targets[Team.DRO] == 0.0


def test_zero_on_duty_pcas_is_a_precondition_violation() -> None:
    with pytest.raises(PreconditionViolation):
        calculate_pca_fte(total_beds=80, total_pca_on_duty=0, pt_per_team={}, beds_per_pt=8)


def test_summarize_on_duty_skips_leave_and_counts_floating_pcas() -> None:
    staff = [
        Staff(staff_id="T1", name="a", rank=StaffRank.APPT, team=Team.FO),
        Staff(staff_id="T2", name="b", rank=StaffRank.RPT, team=Team.FO, fte_remaining=0.5),
        Staff(
            staff_id="T3",
            name="c",
            rank=StaffRank.RPT,
            team=Team.SMM,
            leave=LeaveKind.VL,
            fte_remaining=0.0,
        ),
        Staff(staff_id="P1", name="d", rank=StaffRank.PCA, team=Team.FO),
        Staff(staff_id="F1", name="e", rank=StaffRank.PCA, floating=True, fte_remaining=0.75),
    ]

    summary = summarize_on_duty(staff)

    assert summary.pt_per_team[Team.FO] == 1.5
    assert summary.pt_per_team[Team.SMM] == 0.0
    assert summary.total_pt_on_duty == 1.5
    assert summary.total_pca_on_duty == 1.75
    assert summary.pca_per_team[Team.FO] == 1.0


def test_ward_bed_edits_replace_ward_sums() -> None:
    wards = [
        Ward(name="R1", total_beds=30, team_beds={Team.FO: 18, Team.SMM: 12}),
        Ward(name="R2", total_beds=10, team_beds={Team.FO: 10}),
    ]
    beds = beds_per_team_from_wards(wards, {Team.SMM: 20})

    assert beds[Team.FO] == 28
    assert beds[Team.SMM] == 20
    assert beds[Team.DRO] == 0
