"""Five-step schedule workflow with gated edits and single-writer auto-save."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock, RLock
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from ward_allocation.domain.constraints import (
    AllocationConfig,
    validate_allocation_config,
    validate_slots,
    validate_staff_edit,
    validate_therapist_override,
)
from ward_allocation.domain.errors import (
    RECONCILIATION_OVERFLOW,
    PersistenceFailure,
    PreconditionViolation,
    StepLockedError,
)
from ward_allocation.domain.models import (
    RosterSnapshot,
    ScheduleCalculations,
    Staff,
    StaffEdit,
    Team,
    TeamAllocationLog,
    TeamFTE,
    TieBreakDecision,
    TieBreakRequest,
    to_date_key,
)
from ward_allocation.repository.data_repository import DataRepository
from ward_allocation.services.cache_service import ScheduleCache
from ward_allocation.services.fte_service import beds_per_team_from_wards, summarize_on_duty
from ward_allocation.services.schedule_engine import (
    ScheduleInputs,
    apply_staff_edits,
    compute_schedule,
    to_jsonable,
)
from ward_allocation.services.schedule_state import (
    MergedSchedule,
    OverrideState,
    SavedState,
    compose_inputs,
    fold_into_saved,
    merge_layers,
)
from ward_allocation.utils.config import Settings, get_settings
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)


class UnknownStaffError(PreconditionViolation):
    """Raised when an edit names a staff id the roster does not know."""


class WorkflowStep(str, Enum):
    LEAVE_FTE = "leave-fte"
    THERAPIST_PCA = "therapist-pca"
    FLOATING_PCA = "floating-pca"
    BED_RELIEVING = "bed-relieving"
    REVIEW = "review"


STEP_ORDER: tuple[WorkflowStep, ...] = tuple(WorkflowStep)


def _index(step: WorkflowStep) -> int:
    return STEP_ORDER.index(step)


class ScheduleRepository(Protocol):
    def load_schedule(self, date_key: str) -> Optional[SavedState]: ...

    def save_schedule(
        self,
        date_key: str,
        state: SavedState,
        team_logs: Sequence[TeamAllocationLog] = (),
    ) -> None: ...


class TieBreakDecisionSource(Protocol):
    async def request_decision(self, request: TieBreakRequest) -> TieBreakDecision: ...


@dataclass(frozen=True)
class StepValidation:
    step: WorkflowStep
    errors: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class TransitionResult:
    step: WorkflowStep
    moved: bool
    saved: bool
    validation: Optional[StepValidation] = None
    save_error: Optional[str] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleWorkflowController:
    """Owns one schedule date: its three state layers and its step.

    Edits land in Override State. The Algorithm State is recomputed on demand
    from Saved + Override inputs and memoised in the injected cache. Saves are
    serialised by a write lock; each save persists the Override State as it
    was when that save cycle started, and loops while newer edits arrived.
    """

    def __init__(
        self,
        date_key: str,
        roster: RosterSnapshot,
        repository: ScheduleRepository,
        config: AllocationConfig = AllocationConfig(),
        cache: Optional[ScheduleCache[ScheduleCalculations]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        validate_allocation_config(config)
        self._date_key = to_date_key(date_key)
        self._roster = roster
        self._repository = repository
        self._config = config
        self._cache = cache or ScheduleCache()
        self._now = now or _utc_now
        self._state_lock = RLock()
        self._write_lock = Lock()
        self._saved = repository.load_schedule(self._date_key)
        self._step = WorkflowStep(self._saved.step) if self._saved else WorkflowStep.LEAVE_FTE
        self._override = OverrideState()
        self._edit_revision = 0
        self._tie_generation = 0

    # -- read side ----------------------------------------------------------

    @property
    def date_key(self) -> str:
        return self._date_key

    @property
    def step(self) -> WorkflowStep:
        return self._step

    @property
    def saved_state(self) -> Optional[SavedState]:
        return self._saved

    @property
    def override_state(self) -> OverrideState:
        return self._override

    @property
    def has_unsaved_changes(self) -> bool:
        with self._state_lock:
            return not self._override.is_empty()

    def composed_inputs(self) -> ScheduleInputs:
        with self._state_lock:
            return compose_inputs(self._saved, self._override)

    def _compute(self, inputs: ScheduleInputs, include_floating: bool) -> ScheduleCalculations:
        key = "|".join(
            (
                self._date_key,
                "floating" if include_floating else "fixed",
                json.dumps(to_jsonable(inputs), sort_keys=True),
            )
        )
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        calculations = compute_schedule(
            self._date_key,
            self._roster,
            inputs,
            config=self._config,
            include_floating=include_floating,
        )
        self._cache.put(key, calculations)
        return calculations

    def calculations(self, step: Optional[WorkflowStep] = None) -> ScheduleCalculations:
        """Algorithm State for the current (or given) step.

        The floating pass only runs from the floating-pca step onward. Raises
        ``PreconditionViolation`` when the inputs cannot be computed.
        """
        target = step or self._step
        return self._compute(
            self.composed_inputs(),
            include_floating=_index(target) >= _index(WorkflowStep.FLOATING_PCA),
        )

    def merged(self) -> MergedSchedule:
        with self._state_lock:
            override = self._override
        return merge_layers(self.calculations(), override)

    def validate(self, step: Optional[WorkflowStep] = None) -> StepValidation:
        target = step or self._step
        if target == WorkflowStep.LEAVE_FTE:
            return StepValidation(step=target, errors=tuple(self._leave_fte_errors()))

        try:
            calculations = self.calculations(target)
        except PreconditionViolation as exc:
            return StepValidation(step=target, errors=(str(exc),))

        errors: list[str] = []
        if target == WorkflowStep.THERAPIST_PCA:
            errors.extend(
                issue.message
                for issue in calculations.issues
                if issue.blocking and issue.code.startswith("THERAPIST_")
            )
        elif target == WorkflowStep.FLOATING_PCA:
            errors.extend(
                "tie-break pending for teams "
                + ", ".join(team.value for team in request.tied_teams)
                for request in calculations.tie_break_requests
            )
        elif target == WorkflowStep.BED_RELIEVING:
            errors.extend(
                issue.message
                for issue in calculations.issues
                if issue.code == RECONCILIATION_OVERFLOW
            )
        elif target == WorkflowStep.REVIEW:
            if not calculations.therapist_allocations and not calculations.pca_allocations:
                errors.append("schedule has no allocations")
        return StepValidation(step=target, errors=tuple(errors))

    def _leave_fte_errors(self) -> list[str]:
        inputs = self.composed_inputs()
        try:
            staff = apply_staff_edits(self._roster.staff, inputs.staff_edits)
        except PreconditionViolation as exc:
            return [str(exc)]
        errors: list[str] = []
        summary = summarize_on_duty(staff)
        if summary.total_pt_on_duty <= 0:
            errors.append("no therapist is on duty")
        if summary.total_pca_on_duty <= 0:
            errors.append("no PCA is on duty")
        if sum(beds_per_team_from_wards(self._roster.wards, inputs.ward_bed_edits).values()) <= 0:
            errors.append("total beds must be > 0")
        return errors

    # -- edits --------------------------------------------------------------

    def _require_step(self, minimum: WorkflowStep, action: str) -> None:
        if _index(self._step) < _index(minimum):
            raise StepLockedError(
                f"{action} is editable from the {minimum.value} step; current step is {self._step.value}"
            )

    def _staff(self, staff_id: str) -> Staff:
        member = self._roster.staff_by_id().get(staff_id)
        if member is None:
            raise UnknownStaffError(f"unknown staff id: {staff_id}")
        return member

    def _apply(self, **changes: Any) -> None:
        with self._state_lock:
            self._override = replace(self._override, **changes)
            self._edit_revision += 1

    def update_staff(self, staff_id: str, edit: StaffEdit) -> None:
        self._staff(staff_id)
        validate_staff_edit(staff_id, edit)
        with self._state_lock:
            edits = dict(self._override.staff_edits)
            edits[staff_id] = edit
            self._apply(staff_edits=edits)
        logger.info("Staff edit recorded | date=%s | staff=%s | leave=%s", self._date_key, staff_id, edit.leave.value)

    def update_ward_beds(self, beds: Mapping[Team, int]) -> None:
        for team, count in beds.items():
            if count < 0:
                raise PreconditionViolation(f"beds for {team.value} must be >= 0")
        with self._state_lock:
            edits = dict(self._override.ward_bed_edits)
            edits.update(beds)
            self._apply(ward_bed_edits=edits)

    def set_therapist_override(self, staff_id: str, entries: tuple[TeamFTE, ...]) -> None:
        self._require_step(WorkflowStep.THERAPIST_PCA, "therapist allocation")
        member = self._staff(staff_id)
        if not member.is_therapist:
            raise PreconditionViolation(f"staff {staff_id} is not a therapist")
        validate_therapist_override(staff_id, entries)
        with self._state_lock:
            overrides = dict(self._override.therapist_overrides)
            overrides[staff_id] = tuple(entries)
            self._apply(therapist_overrides=overrides)

    def set_pca_slots(self, staff_id: str, slots: Mapping[int, Team]) -> None:
        self._require_step(WorkflowStep.FLOATING_PCA, "floating PCA slots")
        member = self._staff(staff_id)
        if not member.is_pca or not member.floating:
            raise PreconditionViolation(f"staff {staff_id} is not a floating PCA")
        validate_slots(tuple(slots), f"slots for {staff_id}")
        edit = self.composed_inputs().staff_edits.get(staff_id)
        available = edit.available_slots if edit else member.available_slots
        outside = sorted(slot for slot in slots if slot not in available)
        if outside:
            raise PreconditionViolation(
                f"slots {outside} are outside the availability of PCA {staff_id}"
            )
        with self._state_lock:
            edits = dict(self._override.pca_slot_edits)
            edits[staff_id] = dict(sorted(slots.items()))
            self._apply(pca_slot_edits=edits)

    def record_tie_break_decision(self, decision: TieBreakDecision) -> None:
        self._require_step(WorkflowStep.FLOATING_PCA, "tie-break decisions")
        pending = {request.context_key: request for request in self.calculations().tie_break_requests}
        request = pending.get(decision.context_key)
        if request is None:
            raise PreconditionViolation(f"no pending tie-break for {decision.context_key}")
        if decision.chosen_team not in request.tied_teams:
            raise PreconditionViolation(
                f"team {decision.chosen_team.value} is not part of tie {decision.context_key}"
            )
        with self._state_lock:
            decisions = dict(self._override.tie_break_decisions)
            decisions[decision.context_key] = decision
            self._apply(tie_break_decisions=decisions)
        logger.info(
            "Tie-break decided | date=%s | key=%s | team=%s | by=%s",
            self._date_key,
            decision.context_key,
            decision.chosen_team.value,
            decision.decided_by,
        )

    def discard_changes(self) -> None:
        with self._state_lock:
            self._override = OverrideState()
            self._edit_revision += 1

    # -- persistence --------------------------------------------------------

    def save(self) -> SavedState:
        """Persist Saved + Override as one snapshot; loop while edits arrive.

        Raises ``PersistenceFailure`` and leaves Override State untouched when
        the repository rejects the write.
        """
        return self._save()

    def _save(self, step: Optional[WorkflowStep] = None) -> SavedState:
        with self._write_lock:
            cycle = 0
            while True:
                cycle += 1
                with self._state_lock:
                    snapshot = self._override
                    revision = self._edit_revision
                    saved_step = step or self._step
                    base = self._saved

                calculations: Optional[ScheduleCalculations] = None
                try:
                    calculations = self._compute(
                        compose_inputs(base, snapshot),
                        include_floating=_index(saved_step) >= _index(WorkflowStep.FLOATING_PCA),
                    )
                except PreconditionViolation as exc:
                    logger.info("Saving without calculations | date=%s | reason=%s", self._date_key, exc)

                state = fold_into_saved(
                    base,
                    snapshot,
                    date_key=self._date_key,
                    step=saved_step.value,
                    saved_at=self._now().isoformat(timespec="seconds"),
                    calculations=to_jsonable(calculations) if calculations else None,
                )
                try:
                    self._repository.save_schedule(
                        self._date_key,
                        state,
                        calculations.team_logs if calculations is not None else (),
                    )
                except PersistenceFailure:
                    logger.warning(
                        "Schedule save failed, edits kept | date=%s | revision=%s",
                        self._date_key,
                        state.revision,
                    )
                    raise

                with self._state_lock:
                    self._saved = state
                    self._override = self._override.without(snapshot)
                    superseded = self._edit_revision != revision
                logger.info(
                    "Schedule saved | date=%s | revision=%s | step=%s | cycle=%s",
                    self._date_key,
                    state.revision,
                    state.step,
                    cycle,
                )
                if not superseded:
                    return state
                logger.info("Edits arrived during save, saving again | date=%s", self._date_key)

    # -- navigation ---------------------------------------------------------

    def go_to_step(self, target: WorkflowStep) -> TransitionResult:
        """Validate the steps being left, then save under the target step and move.

        A blocked move still saves pending edits under the current step. The
        step reached is always persisted so a new controller resumes there.
        """
        current = self._step
        if _index(target) > _index(current):
            for step in STEP_ORDER[_index(current) : _index(target)]:
                validation = self.validate(step)
                if not validation.ok:
                    logger.info(
                        "Step transition blocked | date=%s | step=%s | errors=%s",
                        self._date_key,
                        step.value,
                        len(validation.errors),
                    )
                    saved = False
                    if self.has_unsaved_changes:
                        try:
                            self._save(current)
                            saved = True
                        except PersistenceFailure as exc:
                            return TransitionResult(
                                step=current,
                                moved=False,
                                saved=False,
                                validation=validation,
                                save_error=str(exc),
                            )
                    return TransitionResult(step=current, moved=False, saved=saved, validation=validation)

        saved = False
        if self.has_unsaved_changes or target != current:
            try:
                self._save(target)
                saved = True
            except PersistenceFailure as exc:
                return TransitionResult(step=current, moved=False, saved=False, save_error=str(exc))

        with self._state_lock:
            if (
                _index(target) < _index(WorkflowStep.FLOATING_PCA)
                and _index(current) >= _index(WorkflowStep.FLOATING_PCA)
            ):
                self._tie_generation += 1
            self._step = target
        logger.info(
            "Step changed | date=%s | from=%s | to=%s",
            self._date_key,
            current.value,
            target.value,
        )
        return TransitionResult(step=target, moved=target != current, saved=saved)

    def go_next(self) -> TransitionResult:
        position = _index(self._step)
        if position == len(STEP_ORDER) - 1:
            return self.go_to_step(self._step)
        return self.go_to_step(STEP_ORDER[position + 1])

    def go_back(self) -> TransitionResult:
        return self.go_to_step(STEP_ORDER[max(0, _index(self._step) - 1)])

    async def resolve_pending_ties(self, source: TieBreakDecisionSource) -> list[TieBreakDecision]:
        """Ask ``source`` for each pending tie until none remain.

        Waits without a timeout. Leaving the floating steps while a request is
        outstanding abandons it and any later answer is discarded.
        """
        generation = self._tie_generation
        asked: set[str] = set()
        decisions: list[TieBreakDecision] = []
        while True:
            requests = [
                request
                for request in self.calculations().tie_break_requests
                if request.context_key not in asked
            ]
            if not requests:
                return decisions
            request = requests[0]
            asked.add(request.context_key)
            decision = await source.request_decision(request)
            if generation != self._tie_generation or _index(self._step) < _index(WorkflowStep.FLOATING_PCA):
                logger.info(
                    "Tie-break abandoned | date=%s | key=%s",
                    self._date_key,
                    request.context_key,
                )
                return decisions
            self.record_tie_break_decision(decision)
            decisions.append(decision)


class ScheduleWorkflowService:
    """Registry of one workflow controller per schedule date."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        cache: Optional[ScheduleCache[ScheduleCalculations]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._cache = cache or ScheduleCache(
            ttl_seconds=self._settings.schedule_cache_ttl_seconds,
            max_entries=self._settings.schedule_cache_max_entries,
        )
        self._config = AllocationConfig(
            bed_reconciliation_tolerance=self._settings.bed_reconciliation_tolerance,
            floating_pca_priority_order=self._settings.floating_pca_priority_order,
        )
        validate_allocation_config(self._config)
        self._controllers: dict[str, ScheduleWorkflowController] = {}
        self._lock = RLock()

    @property
    def repository(self) -> DataRepository:
        return self._repository

    def controller_for(self, schedule_date: Any) -> ScheduleWorkflowController:
        date_key = to_date_key(schedule_date)
        with self._lock:
            controller = self._controllers.get(date_key)
            if controller is None:
                controller = ScheduleWorkflowController(
                    date_key=date_key,
                    roster=self._repository.load_roster(),
                    repository=self._repository,
                    config=self._config,
                    cache=self._cache,
                )
                self._controllers[date_key] = controller
            return controller

    def reload_roster(self) -> int:
        """Invalidate cached calculations and drop controllers with nothing unsaved."""
        with self._lock:
            epoch = self._cache.bump_epoch()
            for date_key in [key for key, item in self._controllers.items() if not item.has_unsaved_changes]:
                del self._controllers[date_key]
        logger.info("Roster reloaded | cache_epoch=%s", epoch)
        return epoch
