from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from ward_allocation.domain.errors import PersistenceFailure, PreconditionViolation, StepLockedError
from ward_allocation.domain.models import (
    LeaveKind,
    RosterSnapshot,
    ScheduleCalculations,
    Staff,
    StaffEdit,
    StaffRank,
    Team,
    TeamFTE,
    TieBreakDecision,
    Ward,
)
from ward_allocation.repository.data_repository import DataRepository, demo_roster
from ward_allocation.services.cache_service import ScheduleCache
from ward_allocation.services.workflow_service import (
    ScheduleWorkflowController,
    ScheduleWorkflowService,
    UnknownStaffError,
    WorkflowStep,
)
from ward_allocation.utils.config import get_settings


MONDAY = "2026-03-02"


class FakeRepository:
    def __init__(self) -> None:
        self.saved = {}
        self.save_calls = []
        self.audit_calls = []
        self.fail = False
        self.during_save = None

    def load_schedule(self, date_key):
        return self.saved.get(date_key)

    def save_schedule(self, date_key, state, team_logs=()) -> None:
        if self.fail:
            raise PersistenceFailure("database is locked")
        self.save_calls.append(state)
        if self.during_save is not None:
            hook, self.during_save = self.during_save, None
            hook()
        self.saved[date_key] = state
        self.audit_calls.append((date_key, state.revision, len(team_logs)))


def _fixed_now() -> datetime:
    return datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _controller(repository: FakeRepository, roster: RosterSnapshot | None = None) -> ScheduleWorkflowController:
    return ScheduleWorkflowController(
        date_key=MONDAY,
        roster=roster or demo_roster(),
        repository=repository,
        now=_fixed_now,
    )


def _tie_roster() -> RosterSnapshot:
    return RosterSnapshot(
        staff=(
            Staff(staff_id="T1", name="FO therapist", rank=StaffRank.RPT, team=Team.FO),
            Staff(staff_id="T2", name="SMM therapist", rank=StaffRank.RPT, team=Team.SMM),
            Staff(
                staff_id="F01",
                name="Floating",
                rank=StaffRank.PCA,
                floating=True,
                fte_remaining=0.5,
                available_slots=(1, 2),
            ),
            Staff(
                staff_id="P03",
                name="SFM PCA",
                rank=StaffRank.PCA,
                team=Team.SFM,
                fte_remaining=0.5,
                available_slots=(1, 2),
            ),
        ),
        wards=(Ward(name="W1", total_beds=20, team_beds={Team.FO: 10, Team.SMM: 10}),),
    )


class PickLastTeam:
    def __init__(self) -> None:
        self.requests = []

    async def request_decision(self, request):
        self.requests.append(request)
        await asyncio.sleep(0)
        return TieBreakDecision(
            context_key=request.context_key,
            chosen_team=request.tied_teams[-1],
            decided_by="charge nurse",
            decided_at=_fixed_now().isoformat(),
        )


def test_new_schedule_starts_at_first_step() -> None:
    controller = _controller(FakeRepository())

    assert controller.step == WorkflowStep.LEAVE_FTE
    assert controller.saved_state is None
    assert controller.has_unsaved_changes is False


def test_later_step_edits_are_locked_until_reached() -> None:
    controller = _controller(FakeRepository())

    with pytest.raises(StepLockedError):
        controller.set_therapist_override("T01R", (TeamFTE(team=Team.SMM, fte=1.0),))
    with pytest.raises(StepLockedError):
        controller.set_pca_slots("F01", {1: Team.FO})


def test_unknown_staff_edit_is_rejected() -> None:
    controller = _controller(FakeRepository())

    with pytest.raises(UnknownStaffError):
        controller.update_staff("ZZZ", StaffEdit(leave=LeaveKind.VL, fte_remaining=0.0))


def test_transition_auto_saves_pending_edits() -> None:
    repository = FakeRepository()
    controller = _controller(repository)
    controller.update_staff("T02R", StaffEdit(leave=LeaveKind.VL, fte_remaining=0.0))

    result = controller.go_next()

    assert result.moved is True
    assert result.saved is True
    assert controller.step == WorkflowStep.THERAPIST_PCA
    assert controller.has_unsaved_changes is False
    saved = repository.saved[MONDAY]
    assert saved.revision == 1
    assert saved.saved_at == "2026-03-02T09:30:00+00:00"
    assert saved.staff_edits["T02R"].leave == LeaveKind.VL
    assert repository.audit_calls == [(MONDAY, 1, 8)]


def test_failed_save_keeps_edits_and_blocks_transition() -> None:
    repository = FakeRepository()
    repository.fail = True
    controller = _controller(repository)
    controller.update_staff("T02R", StaffEdit(leave=LeaveKind.VL, fte_remaining=0.0))

    result = controller.go_next()

    assert result.moved is False
    assert result.save_error == "database is locked"
    assert controller.step == WorkflowStep.LEAVE_FTE
    assert controller.override_state.staff_edits["T02R"].leave == LeaveKind.VL

    with pytest.raises(PersistenceFailure):
        controller.save()
    assert controller.has_unsaved_changes is True


def test_edit_during_save_triggers_follow_up_save() -> None:
    repository = FakeRepository()
    controller = _controller(repository)
    controller.update_staff("T02R", StaffEdit(leave=LeaveKind.VL, fte_remaining=0.0))
    repository.during_save = lambda: controller.update_staff(
        "T03R", StaffEdit(leave=LeaveKind.SICK_LEAVE, fte_remaining=0.0)
    )

    state = controller.save()

    assert len(repository.save_calls) == 2
    first, second = repository.save_calls
    assert set(first.staff_edits) == {"T02R"}
    assert set(second.staff_edits) == {"T02R", "T03R"}
    assert second.revision == first.revision + 1
    assert state is second
    assert controller.has_unsaved_changes is False


def test_leave_step_blocks_when_no_beds_remain() -> None:
    controller = _controller(FakeRepository())
    controller.update_ward_beds({team: 0 for team in Team})

    result = controller.go_next()

    assert result.moved is False
    assert result.validation is not None
    assert "total beds must be > 0" in result.validation.errors


def test_blocking_override_stops_forward_but_not_backward() -> None:
    controller = _controller(FakeRepository())
    controller.go_next()
    controller.set_therapist_override(
        "T01R",
        (TeamFTE(team=Team.FO, fte=1.0), TeamFTE(team=Team.SMM, fte=0.5)),
    )

    forward = controller.go_next()
    assert forward.moved is False
    assert controller.step == WorkflowStep.THERAPIST_PCA

    backward = controller.go_back()
    assert backward.moved is True
    assert controller.step == WorkflowStep.LEAVE_FTE


def test_demo_day_walks_through_every_step() -> None:
    controller = _controller(FakeRepository())

    result = controller.go_to_step(WorkflowStep.REVIEW)

    assert result.moved is True
    assert controller.step == WorkflowStep.REVIEW
    assert controller.validate().ok


def test_pca_slot_edit_must_fit_availability() -> None:
    controller = _controller(FakeRepository())
    controller.update_staff(
        "F01",
        StaffEdit(leave=LeaveKind.ON_DUTY, fte_remaining=0.5, available_slots=(1, 2)),
    )
    controller.go_to_step(WorkflowStep.FLOATING_PCA)

    with pytest.raises(PreconditionViolation):
        controller.set_pca_slots("F01", {3: Team.FO})
    with pytest.raises(PreconditionViolation):
        controller.set_pca_slots("P01", {1: Team.SMM})

    controller.set_pca_slots("F01", {2: Team.NSM})
    assert controller.merged().pca_slots["F01"][2] == Team.NSM


def test_pending_tie_blocks_floating_step_until_decided() -> None:
    controller = _controller(FakeRepository(), _tie_roster())
    controller.go_to_step(WorkflowStep.FLOATING_PCA)

    assert controller.step == WorkflowStep.FLOATING_PCA
    assert not controller.validate().ok
    request = controller.calculations().tie_break_requests[0]

    with pytest.raises(PreconditionViolation):
        controller.record_tie_break_decision(
            TieBreakDecision(
                context_key=request.context_key,
                chosen_team=Team.MC,
                decided_by="charge nurse",
                decided_at=_fixed_now().isoformat(),
            )
        )

    source = PickLastTeam()
    decisions = asyncio.run(controller.resolve_pending_ties(source))

    assert [decision.chosen_team for decision in decisions] == [Team.SMM]
    assert controller.validate().ok
    assert controller.merged().pca_slots["F01"] == {1: Team.SMM, 2: Team.SMM}


def test_leaving_floating_step_abandons_outstanding_tie() -> None:
    controller = _controller(FakeRepository(), _tie_roster())
    controller.go_to_step(WorkflowStep.FLOATING_PCA)

    class LeaveMidway(PickLastTeam):
        async def request_decision(self, request):
            controller.go_back()
            return await super().request_decision(request)

    decisions = asyncio.run(controller.resolve_pending_ties(LeaveMidway()))

    assert decisions == []
    assert controller.step == WorkflowStep.THERAPIST_PCA
    assert not controller.override_state.tie_break_decisions


def test_saved_step_is_restored_for_a_new_controller() -> None:
    repository = FakeRepository()
    first = _controller(repository)
    first.go_next()
    first.update_ward_beds({Team.FO: 16})
    first.save()

    second = _controller(repository)

    assert second.step == WorkflowStep.THERAPIST_PCA
    assert second.composed_inputs().ward_bed_edits == {Team.FO: 16}


def test_step_reached_by_transition_is_restored_without_explicit_save() -> None:
    repository = FakeRepository()
    first = _controller(repository)
    first.update_staff("T02R", StaffEdit(leave=LeaveKind.VL, fte_remaining=0.0))

    first.go_next()

    assert first.step == WorkflowStep.THERAPIST_PCA
    assert first.has_unsaved_changes is False
    assert repository.saved[MONDAY].step == WorkflowStep.THERAPIST_PCA.value
    second = _controller(repository)
    assert second.step == WorkflowStep.THERAPIST_PCA
    second.set_therapist_override("T01R", (TeamFTE(team=Team.FO, fte=1.0),))


def test_moves_without_edits_still_persist_the_step() -> None:
    repository = FakeRepository()
    first = _controller(repository)

    first.go_to_step(WorkflowStep.BED_RELIEVING)
    first.go_back()

    assert [state.step for state in repository.save_calls] == ["bed-relieving", "floating-pca"]
    assert _controller(repository).step == WorkflowStep.FLOATING_PCA


def test_blocked_move_saves_edits_under_current_step() -> None:
    repository = FakeRepository()
    controller = _controller(repository)
    controller.update_ward_beds({team: 0 for team in Team})

    result = controller.go_next()

    assert result.moved is False
    assert result.saved is True
    assert repository.saved[MONDAY].step == WorkflowStep.LEAVE_FTE.value


def test_service_reuses_controllers_and_reload_drops_idle_ones(tmp_path) -> None:
    get_settings.cache_clear()
    settings = replace(get_settings(), database_path=tmp_path / "workflow.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_demo_roster()
    service = ScheduleWorkflowService(repository=repository, settings=settings)

    controller = service.controller_for(MONDAY)
    assert service.controller_for("2026-03-02T10:00:00") is controller

    busy = service.controller_for("2026-03-03")
    busy.update_staff("T01R", StaffEdit(leave=LeaveKind.VL, fte_remaining=0.0))

    assert service.reload_roster() == 1
    assert service.controller_for(MONDAY) is not controller
    assert service.controller_for("2026-03-03") is busy


def test_repeated_edits_keep_schedule_cache_bounded() -> None:
    cache: ScheduleCache[ScheduleCalculations] = ScheduleCache(max_entries=4)
    controller = ScheduleWorkflowController(
        date_key=MONDAY,
        roster=demo_roster(),
        repository=FakeRepository(),
        cache=cache,
        now=_fixed_now,
    )

    for beds in range(10, 30):
        controller.update_ward_beds({Team.FO: beds})
        controller.calculations()

    assert len(cache) == 4
    assert controller.calculations().beds_per_team[Team.FO] == 29
