"""HTTP controller layer for the daily schedule workflow."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from ward_allocation.controllers.dependencies import get_repository, get_workflow_service
from ward_allocation.domain.errors import (
    AllocationError,
    PersistenceFailure,
    PreconditionViolation,
    SnapshotDecodeError,
    StepLockedError,
)
from ward_allocation.domain.models import (
    SLOTS,
    StaffEdit,
    Team,
    TeamFTE,
    TieBreakDecision,
    normalize_leave_type,
)
from ward_allocation.repository.data_repository import DataRepository
from ward_allocation.services.schedule_engine import to_jsonable
from ward_allocation.services.workflow_service import (
    ScheduleWorkflowController,
    ScheduleWorkflowService,
    StepValidation,
    UnknownStaffError,
    WorkflowStep,
)
from ward_allocation.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/schedules", tags=["schedules"])


class StaffEditRequest(BaseModel):
    """Leave and FTE input for one staff member on the day."""

    leave: Optional[str] = None
    fte_remaining: float = Field(ge=0.0, le=1.0)
    available_slots: list[int] = Field(default_factory=lambda: list(SLOTS))

    @field_validator("leave")
    @classmethod
    def validate_leave(cls, value: Optional[str]) -> Optional[str]:
        try:
            normalize_leave_type(value)
        except PreconditionViolation as exc:
            raise ValueError(str(exc)) from exc
        return value


class WardBedsRequest(BaseModel):
    beds: dict[Team, int]

    @field_validator("beds")
    @classmethod
    def validate_beds(cls, value: dict[Team, int]) -> dict[Team, int]:
        if not value:
            raise ValueError("beds must name at least one team")
        for team, count in value.items():
            if count < 0:
                raise ValueError(f"beds for {team.value} must be >= 0")
        return value


class TeamFTEEntry(BaseModel):
    team: Team
    fte: float = Field(gt=0.0, le=1.0)


class TherapistOverrideRequest(BaseModel):
    entries: list[TeamFTEEntry] = Field(min_length=1)


class PCASlotsRequest(BaseModel):
    slots: dict[int, Team] = Field(min_length=1)


class TieBreakDecisionRequest(BaseModel):
    context_key: str = Field(min_length=1)
    chosen_team: Team
    decided_by: str = Field(min_length=1)


class StepRequest(BaseModel):
    action: Literal["next", "back", "goto"] = "next"
    step: Optional[WorkflowStep] = None


class StepValidationResponse(BaseModel):
    step: WorkflowStep
    ok: bool
    errors: list[str]


class ScheduleResponse(BaseModel):
    date_key: str
    step: WorkflowStep
    has_unsaved_changes: bool
    revision: int = Field(ge=0)
    saved_at: Optional[str] = None
    validation: StepValidationResponse
    calculations: Optional[dict[str, Any]] = None
    calculation_error: Optional[str] = None


class TransitionResponse(BaseModel):
    step: WorkflowStep
    moved: bool
    saved: bool
    save_error: Optional[str] = None
    validation: Optional[StepValidationResponse] = None


class SaveResponse(BaseModel):
    date_key: str
    revision: int = Field(ge=0)
    step: WorkflowStep
    saved_at: Optional[str] = None


class AuditEntryResponse(BaseModel):
    revision: int
    team: Team
    slot: Optional[int] = None
    pca_id: Optional[str] = None
    phase: str
    outcome: str
    reason: str
    allocation_order: int
    was_preferred_pca: bool
    was_preferred_slot: bool


class AuditResponse(BaseModel):
    date_key: str
    entries: list[AuditEntryResponse]


def _http_error(exc: AllocationError) -> HTTPException:
    if isinstance(exc, UnknownStaffError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, StepLockedError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PreconditionViolation):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, PersistenceFailure):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, SnapshotDecodeError):
        logger.error("Stored schedule could not be decoded | error=%s", exc)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored schedule is invalid",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _unexpected(action: str, exc: Exception) -> HTTPException:
    logger.exception("Unexpected failure | action=%s", action)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )


def _validation_response(validation: StepValidation) -> StepValidationResponse:
    return StepValidationResponse(
        step=validation.step,
        ok=validation.ok,
        errors=list(validation.errors),
    )


def _controller(service: ScheduleWorkflowService, schedule_date: date) -> ScheduleWorkflowController:
    try:
        return service.controller_for(schedule_date)
    except AllocationError as exc:
        raise _http_error(exc) from exc


def _schedule_response(controller: ScheduleWorkflowController) -> ScheduleResponse:
    calculations: Optional[dict[str, Any]] = None
    calculation_error: Optional[str] = None
    try:
        calculations = to_jsonable(controller.calculations())
    except PreconditionViolation as exc:
        calculation_error = str(exc)
    saved = controller.saved_state
    return ScheduleResponse(
        date_key=controller.date_key,
        step=controller.step,
        has_unsaved_changes=controller.has_unsaved_changes,
        revision=saved.revision if saved else 0,
        saved_at=saved.saved_at if saved else None,
        validation=_validation_response(controller.validate()),
        calculations=calculations,
        calculation_error=calculation_error,
    )


@router.get("/{schedule_date}", response_model=ScheduleResponse, status_code=status.HTTP_200_OK)
async def get_schedule(
    schedule_date: date,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> ScheduleResponse:
    """Current step, validation and Algorithm State for one day."""
    controller = _controller(service, schedule_date)
    try:
        return _schedule_response(controller)
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("load schedule", exc) from exc


@router.put("/{schedule_date}/staff/{staff_id}", response_model=ScheduleResponse)
async def update_staff(
    schedule_date: date,
    staff_id: str,
    payload: StaffEditRequest,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> ScheduleResponse:
    controller = _controller(service, schedule_date)
    try:
        leave = normalize_leave_type(payload.leave)
        controller.update_staff(
            staff_id,
            StaffEdit(
                leave=leave,
                fte_remaining=payload.fte_remaining,
                available_slots=tuple(payload.available_slots),
            ),
        )
        return _schedule_response(controller)
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("update staff", exc) from exc


@router.put("/{schedule_date}/ward_beds", response_model=ScheduleResponse)
async def update_ward_beds(
    schedule_date: date,
    payload: WardBedsRequest,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> ScheduleResponse:
    """Ward bed counts are editable at every step."""
    controller = _controller(service, schedule_date)
    try:
        controller.update_ward_beds(payload.beds)
        return _schedule_response(controller)
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("update ward beds", exc) from exc


@router.put("/{schedule_date}/therapist_overrides/{staff_id}", response_model=ScheduleResponse)
async def set_therapist_override(
    schedule_date: date,
    staff_id: str,
    payload: TherapistOverrideRequest,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> ScheduleResponse:
    controller = _controller(service, schedule_date)
    try:
        controller.set_therapist_override(
            staff_id,
            tuple(TeamFTE(team=entry.team, fte=entry.fte) for entry in payload.entries),
        )
        return _schedule_response(controller)
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("override therapist allocation", exc) from exc


@router.put("/{schedule_date}/pca_slots/{staff_id}", response_model=ScheduleResponse)
async def set_pca_slots(
    schedule_date: date,
    staff_id: str,
    payload: PCASlotsRequest,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> ScheduleResponse:
    controller = _controller(service, schedule_date)
    try:
        controller.set_pca_slots(staff_id, payload.slots)
        return _schedule_response(controller)
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("edit PCA slots", exc) from exc


@router.post("/{schedule_date}/tie_breaks", response_model=ScheduleResponse)
async def record_tie_break(
    schedule_date: date,
    payload: TieBreakDecisionRequest,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> ScheduleResponse:
    controller = _controller(service, schedule_date)
    try:
        controller.record_tie_break_decision(
            TieBreakDecision(
                context_key=payload.context_key,
                chosen_team=payload.chosen_team,
                decided_by=payload.decided_by,
                decided_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
            )
        )
        return _schedule_response(controller)
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("record tie-break decision", exc) from exc


@router.post("/{schedule_date}/steps", response_model=TransitionResponse)
async def change_step(
    schedule_date: date,
    payload: StepRequest,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> TransitionResponse:
    """Move between steps; a move persists the step reached together with pending edits."""
    if payload.action == "goto" and payload.step is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="step is required when action is 'goto'",
        )
    controller = _controller(service, schedule_date)
    try:
        if payload.action == "next":
            result = controller.go_next()
        elif payload.action == "back":
            result = controller.go_back()
        else:
            result = controller.go_to_step(payload.step)
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("change step", exc) from exc

    response = TransitionResponse(
        step=result.step,
        moved=result.moved,
        saved=result.saved,
        save_error=result.save_error,
        validation=_validation_response(result.validation) if result.validation else None,
    )
    if result.save_error is not None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=response.model_dump(mode="json"),
        )
    if result.validation is not None and not result.validation.ok:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=response.model_dump(mode="json"),
        )
    return response


@router.post("/{schedule_date}/save", response_model=SaveResponse)
async def save_schedule(
    schedule_date: date,
    service: ScheduleWorkflowService = Depends(get_workflow_service),
) -> SaveResponse:
    controller = _controller(service, schedule_date)
    try:
        state = controller.save()
    except AllocationError as exc:
        raise _http_error(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("save schedule", exc) from exc
    return SaveResponse(
        date_key=state.date_key,
        revision=state.revision,
        step=WorkflowStep(state.step),
        saved_at=state.saved_at,
    )


@router.get("/{schedule_date}/audit", response_model=AuditResponse)
async def get_audit_log(
    schedule_date: date,
    revision: Optional[int] = None,
    repository: DataRepository = Depends(get_repository),
) -> AuditResponse:
    """Slot assignment decisions written by the latest (or given) save."""
    date_key = schedule_date.isoformat()
    try:
        rows = repository.list_audit_logs(date_key, revision=revision)
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("load audit log", exc) from exc
    return AuditResponse(
        date_key=date_key,
        entries=[AuditEntryResponse(**row) for row in rows],
    )
