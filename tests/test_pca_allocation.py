from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ward_allocation.domain.constraints import PRIORITY_STAFF_ID
from ward_allocation.domain.errors import UNMET_PCA_NEED, PreconditionViolation
from ward_allocation.domain.models import (
    AssignmentOutcome,
    AssignmentPhase,
    LeaveKind,
    PCAPreference,
    Staff,
    StaffRank,
    Team,
    TieBreakDecision,
)
from ward_allocation.services.pca_service import (
    PCAAllocationContext,
    allocate_pcas,
    tie_break_context_key,
)


def _floating(staff_id: str, **kwargs) -> Staff:
    return Staff(staff_id=staff_id, name=staff_id, rank=StaffRank.PCA, floating=True, **kwargs)


def _home(staff_id: str, team: Team, **kwargs) -> Staff:
    return Staff(staff_id=staff_id, name=staff_id, rank=StaffRank.PCA, team=team, **kwargs)


def _allocation(result, staff_id: str):
    return next((item for item in result.allocations if item.staff_id == staff_id), None)


def _tied_context(**overrides) -> PCAAllocationContext:
    values = {
        "staff": (_floating("F01", fte_remaining=0.5, available_slots=(1, 2)),),
        "average_pca_per_team": {Team.FO: 0.5, Team.SMM: 0.5},
    }
    values.update(overrides)
    return PCAAllocationContext(**values)


def test_home_pcas_fill_their_own_team_first() -> None:
    context = PCAAllocationContext(
        staff=(_home("P01", Team.FO), _floating("F01")),
        average_pca_per_team={Team.FO: 1.0},
    )

    result = allocate_pcas(context)

    home = _allocation(result, "P01")
    assert home is not None and set(home.slots.values()) == {Team.FO}
    assert _allocation(result, "F01") is None
    assert result.pending_per_team[Team.FO] == 0.0


def test_floor_match_hands_out_whole_pcas_preferred_first() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01"), _floating("F02")),
        average_pca_per_team={Team.FO: 1.0},
        pca_preferences=(PCAPreference(team=Team.FO, preferred_pca_ids=("F02",)),),
    )

    result = allocate_pcas(context)

    chosen = _allocation(result, "F02")
    assert chosen is not None
    assert dict(chosen.slots) == {1: Team.FO, 2: Team.FO, 3: Team.FO, 4: Team.FO}
    fo_log = next(log for log in result.team_logs if log.team == Team.FO)
    assert {entry.phase for entry in fo_log.assignments} == {AssignmentPhase.FLOOR_MATCH}
    assert all(entry.was_preferred_pca for entry in fo_log.assignments)


def test_staff_id_priority_ignores_preferred_pcas() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01"), _floating("F02")),
        average_pca_per_team={Team.FO: 1.0},
        pca_preferences=(PCAPreference(team=Team.FO, preferred_pca_ids=("F02",)),),
        priority_order=PRIORITY_STAFF_ID,
    )

    result = allocate_pcas(context)

    assert _allocation(result, "F01") is not None
    assert _allocation(result, "F02") is None


def test_assigned_slots_stay_within_availability() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01", fte_remaining=0.5, available_slots=(1, 3)),),
        average_pca_per_team={Team.FO: 0.5},
    )

    result = allocate_pcas(context)

    allocation = _allocation(result, "F01")
    assert allocation.assigned_slots == frozenset({1, 3})
    assert allocation.fte_assigned == 0.5
    assert allocation.fte_remaining == 0.0


def test_remainder_prefers_requested_slot_and_skips_gym_slot() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01"), _floating("F02")),
        average_pca_per_team={Team.FO: 0.25, Team.GMC: 0.75},
        pca_preferences=(
            PCAPreference(team=Team.FO, preferred_slots=(3,)),
            PCAPreference(team=Team.GMC, avoid_gym_schedule=True, gym_slot=1),
        ),
    )

    result = allocate_pcas(context)

    fo_slots = [slot for item in result.allocations for slot, team in item.slots.items() if team == Team.FO]
    gmc_slots = [slot for item in result.allocations for slot, team in item.slots.items() if team == Team.GMC]
    assert fo_slots == [3]
    assert len(gmc_slots) == 3
    assert 1 not in gmc_slots


def test_two_teams_tied_over_one_pca_emit_exactly_one_request() -> None:
    result = allocate_pcas(_tied_context())

    assert len(result.tie_break_requests) == 1
    request = result.tie_break_requests[0]
    assert request.tied_teams == (Team.FO, Team.SMM)
    assert request.candidate_pca_ids == ("F01",)
    assert request.pending_fte == 0.5
    assert request.context_key == tie_break_context_key(
        AssignmentPhase.REMAINDER, (Team.SMM, Team.FO), ("F01",)
    )
    assert result.pending_per_team[Team.FO] == 0.5
    assert result.pending_per_team[Team.SMM] == 0.5
    assert _allocation(result, "F01") is None
    assert result.issues == ()


def test_unresolved_tie_does_not_block_other_teams() -> None:
    context = _tied_context(
        staff=(
            _floating("F01", fte_remaining=0.5, available_slots=(1, 2)),
            _home("P05", Team.MC),
        ),
        average_pca_per_team={Team.FO: 0.5, Team.SMM: 0.5, Team.MC: 1.0},
    )

    result = allocate_pcas(context)

    assert len(result.tie_break_requests) == 1
    assert _allocation(result, "P05") is not None
    assert result.pending_per_team[Team.MC] == 0.0


def test_decision_hands_contested_pca_to_chosen_team() -> None:
    key = tie_break_context_key(AssignmentPhase.REMAINDER, (Team.FO, Team.SMM), ("F01",))
    decision = TieBreakDecision(
        context_key=key,
        chosen_team=Team.SMM,
        decided_by="charge nurse",
        decided_at=datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc).isoformat(),
    )

    result = allocate_pcas(_tied_context(tie_break_decisions={key: decision}))

    assert result.tie_break_requests == ()
    allocation = _allocation(result, "F01")
    assert dict(allocation.slots) == {1: Team.SMM, 2: Team.SMM}
    assert result.pending_per_team[Team.SMM] == 0.0
    assert result.pending_per_team[Team.FO] == 0.5
    assert [(issue.code, issue.blocking) for issue in result.issues] == [(UNMET_PCA_NEED, False)]
    smm_log = next(log for log in result.team_logs if log.team == Team.SMM)
    assert {entry.phase for entry in smm_log.assignments} == {AssignmentPhase.TIE_BREAK}


def test_decision_for_another_context_is_ignored() -> None:
    decision = TieBreakDecision(
        context_key="remainder|FO,SMM|F99",
        chosen_team=Team.FO,
        decided_by="charge nurse",
        decided_at="2026-03-02T08:00:00+00:00",
    )

    result = allocate_pcas(_tied_context(tie_break_decisions={decision.context_key: decision}))

    assert len(result.tie_break_requests) == 1


def test_manual_slot_edit_counts_against_target() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01"),),
        average_pca_per_team={Team.FO: 0.5},
        manual_slot_edits={"F01": {4: Team.FO}},
    )

    result = allocate_pcas(context)

    allocation = _allocation(result, "F01")
    assert 4 in allocation.slots
    assert len(allocation.slots) == 2
    fo_log = next(log for log in result.team_logs if log.team == Team.FO)
    assert fo_log.assignments[0].phase == AssignmentPhase.MANUAL_OVERRIDE


def test_manual_slot_outside_availability_is_rejected() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01", fte_remaining=0.5, available_slots=(1, 2)),),
        average_pca_per_team={Team.FO: 0.5},
        manual_slot_edits={"F01": {3: Team.FO}},
    )

    with pytest.raises(PreconditionViolation):
        allocate_pcas(context)


def test_manual_slot_on_home_pca_is_rejected() -> None:
    context = PCAAllocationContext(
        staff=(_home("P01", Team.FO),),
        average_pca_per_team={Team.FO: 1.0},
        manual_slot_edits={"P01": {1: Team.SMM}},
    )

    with pytest.raises(PreconditionViolation):
        allocate_pcas(context)


def test_fixed_pass_only_leaves_floating_pool_untouched() -> None:
    context = PCAAllocationContext(
        staff=(_home("P01", Team.FO), _floating("F01")),
        average_pca_per_team={Team.FO: 1.0, Team.SMM: 1.0},
        include_floating=False,
    )

    result = allocate_pcas(context)

    assert [item.staff_id for item in result.allocations] == ["P01"]
    assert result.pending_per_team[Team.SMM] == 1.0
    assert result.issues == ()


def test_unmet_need_is_logged_as_skip() -> None:
    context = PCAAllocationContext(staff=(), average_pca_per_team={Team.NSM: 0.5})

    result = allocate_pcas(context)

    nsm_log = next(log for log in result.team_logs if log.team == Team.NSM)
    assert nsm_log.pending_fte == 0.5
    assert nsm_log.assignments[-1].outcome == AssignmentOutcome.SKIPPED


def test_identical_inputs_give_identical_results() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F03"), _floating("F01"), _floating("F02", fte_remaining=0.5)),
        average_pca_per_team={Team.FO: 1.25, Team.SMM: 0.75, Team.DRO: 0.5},
    )

    assert allocate_pcas(context) == allocate_pcas(context)


def test_tied_teams_share_a_pca_with_enough_free_slots() -> None:
    context = _tied_context(staff=(_floating("F01"),))

    result = allocate_pcas(context)

    assert result.tie_break_requests == ()
    allocation = _allocation(result, "F01")
    assert sorted(allocation.slots.values()) == [Team.FO, Team.FO, Team.SMM, Team.SMM]
    assert result.pending_per_team[Team.FO] == 0.0
    assert result.pending_per_team[Team.SMM] == 0.0


def _logged_pca_ids(result) -> set[str]:
    return {
        entry.pca_id
        for log in result.team_logs
        for entry in log.assignments
        if entry.pca_id is not None
    }


@pytest.mark.parametrize(
    "leave, fte",
    [
        (LeaveKind.SICK_LEAVE, 0.0),
        (LeaveKind.HALF_DAY_VL, 0.5),
        (LeaveKind.STUDY_LEAVE, 0.5),
        (LeaveKind.ON_DUTY, 0.0),
    ],
)
def test_pcas_off_duty_never_receive_slots(leave: LeaveKind, fte: float) -> None:
    context = PCAAllocationContext(
        staff=(
            _home("P01", Team.FO, leave=leave, fte_remaining=fte),
            _floating("F01", leave=leave, fte_remaining=fte),
            _floating("F02"),
        ),
        average_pca_per_team={Team.FO: 1.0, Team.SMM: 1.0},
    )

    result = allocate_pcas(context)

    assert _allocation(result, "P01") is None
    assert _allocation(result, "F01") is None
    assert "P01" not in _logged_pca_ids(result)
    assert "F01" not in _logged_pca_ids(result)
    assert _allocation(result, "F02") is not None


def test_manual_slot_edit_for_pca_on_leave_is_rejected() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01", leave=LeaveKind.HALF_DAY_VL, fte_remaining=0.5, available_slots=(1, 2)),),
        average_pca_per_team={Team.FO: 0.5},
        manual_slot_edits={"F01": {1: Team.FO}},
    )

    with pytest.raises(PreconditionViolation):
        allocate_pcas(context)


def test_floor_match_serves_equal_whole_needs_in_team_order() -> None:
    context = PCAAllocationContext(
        staff=(_floating("F01"),),
        average_pca_per_team={Team.SMM: 1.0, Team.FO: 1.0},
    )

    result = allocate_pcas(context)

    assert set(_allocation(result, "F01").slots.values()) == {Team.FO}
    assert result.tie_break_requests == ()
    assert result.pending_per_team[Team.SMM] == 1.0
