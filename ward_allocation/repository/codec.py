"""Strict JSON documents for persisted rosters and saved schedules.

Saved schedules are a tagged union on ``format_version``; anything that does
not match one of the known shapes exactly is rejected with
``SnapshotDecodeError`` instead of being defaulted.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from ward_allocation.domain.errors import PreconditionViolation, SnapshotDecodeError
from ward_allocation.domain.models import (
    SLOTS,
    WEEKDAYS,
    LeaveKind,
    PCAPreference,
    RosterSnapshot,
    SlotModes,
    SpecialProgram,
    SPTAllocation,
    Staff,
    StaffEdit,
    StaffRank,
    Team,
    TeamFTE,
    TieBreakDecision,
    Ward,
    normalize_leave_type,
    to_date_key,
)
from ward_allocation.services.schedule_state import SavedState


SAVED_SCHEDULE_V1 = "saved-schedule/v1"
SAVED_SCHEDULE_V2 = "saved-schedule/v2"
ROSTER_V1 = "roster/v1"

StepName = Literal["leave-fte", "therapist-pca", "floating-pca", "bed-relieving", "review"]
SlotMode = Literal["AND", "OR"]


def _leave(value: Any) -> LeaveKind:
    try:
        return normalize_leave_type(value)
    except PreconditionViolation as exc:
        raise ValueError(str(exc)) from exc


def _slots(values: list[int]) -> list[int]:
    if len(set(values)) != len(values):
        raise ValueError("slots must not repeat")
    for slot in values:
        if slot not in SLOTS:
            raise ValueError(f"slot must be one of {SLOTS}, got {slot}")
    return sorted(values)


def _weekdays(values: list[str]) -> list[str]:
    for day in values:
        if day not in WEEKDAYS:
            raise ValueError(f"weekday must be one of {WEEKDAYS}, got {day!r}")
    return values


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class StaffEditRecord(_Strict):
    leave: LeaveKind
    fte_remaining: float = Field(ge=0.0, le=1.0)
    available_slots: list[int] = Field(default_factory=lambda: list(SLOTS))

    @field_validator("leave", mode="before")
    @classmethod
    def normalize_leave(cls, value: Any) -> LeaveKind:
        return _leave(value)

    @field_validator("available_slots")
    @classmethod
    def validate_slots(cls, value: list[int]) -> list[int]:
        return _slots(value)


class TeamFTERecord(_Strict):
    team: Team
    fte: float = Field(gt=0.0, le=1.0)


class TieBreakDecisionRecord(_Strict):
    context_key: str = Field(min_length=1)
    chosen_team: Team
    decided_by: str = Field(min_length=1)
    decided_at: str = Field(min_length=1)


class _SavedScheduleBase(_Strict):
    date_key: str
    step: StepName
    revision: int = Field(ge=0)
    saved_at: Optional[str] = None
    staff_edits: dict[str, StaffEditRecord] = Field(default_factory=dict)
    ward_bed_edits: dict[Team, int] = Field(default_factory=dict)
    therapist_overrides: dict[str, list[TeamFTERecord]] = Field(default_factory=dict)
    pca_slot_edits: dict[str, dict[int, Team]] = Field(default_factory=dict)

    @field_validator("date_key")
    @classmethod
    def validate_date_key(cls, value: str) -> str:
        try:
            normalized = to_date_key(value)
        except PreconditionViolation as exc:
            raise ValueError(str(exc)) from exc
        if normalized != value:
            raise ValueError("date_key must be exactly YYYY-MM-DD")
        return value

    @field_validator("ward_bed_edits")
    @classmethod
    def validate_beds(cls, value: dict[Team, int]) -> dict[Team, int]:
        if any(beds < 0 for beds in value.values()):
            raise ValueError("ward bed edits must be >= 0")
        return value

    @field_validator("pca_slot_edits")
    @classmethod
    def validate_pca_slots(cls, value: dict[str, dict[int, Team]]) -> dict[str, dict[int, Team]]:
        for slots in value.values():
            _slots(list(slots))
        return value


class SavedScheduleV1(_SavedScheduleBase):
    """First persisted shape: inputs only, no tie-break decisions."""

    format_version: Literal["saved-schedule/v1"]


class SavedScheduleV2(_SavedScheduleBase):
    format_version: Literal["saved-schedule/v2"]
    tie_break_decisions: dict[str, TieBreakDecisionRecord] = Field(default_factory=dict)
    calculations: Optional[dict[str, Any]] = None


SavedScheduleDocument = Annotated[
    Union[SavedScheduleV1, SavedScheduleV2],
    Field(discriminator="format_version"),
]
_SAVED_ADAPTER: TypeAdapter[Union[SavedScheduleV1, SavedScheduleV2]] = TypeAdapter(SavedScheduleDocument)


def decode_saved_state(raw: Union[str, bytes, Mapping[str, Any]]) -> SavedState:
    """Validate persisted JSON and normalise it into a ``SavedState``."""
    try:
        if isinstance(raw, (str, bytes)):
            document = _SAVED_ADAPTER.validate_json(raw)
        else:
            document = _SAVED_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise SnapshotDecodeError(f"invalid saved schedule: {exc.error_count()} error(s)") from exc

    decisions: dict[str, TieBreakDecision] = {}
    calculations = None
    if isinstance(document, SavedScheduleV2):
        for key, record in document.tie_break_decisions.items():
            if record.context_key != key:
                raise SnapshotDecodeError(f"tie-break decision stored under mismatched key {key!r}")
            decisions[key] = TieBreakDecision(
                context_key=record.context_key,
                chosen_team=record.chosen_team,
                decided_by=record.decided_by,
                decided_at=record.decided_at,
            )
        calculations = document.calculations

    return SavedState(
        date_key=document.date_key,
        step=document.step,
        revision=document.revision,
        saved_at=document.saved_at,
        staff_edits={
            staff_id: StaffEdit(
                leave=record.leave,
                fte_remaining=record.fte_remaining,
                available_slots=tuple(record.available_slots),
            )
            for staff_id, record in document.staff_edits.items()
        },
        ward_bed_edits=dict(document.ward_bed_edits),
        therapist_overrides={
            staff_id: tuple(TeamFTE(team=entry.team, fte=entry.fte) for entry in entries)
            for staff_id, entries in document.therapist_overrides.items()
        },
        pca_slot_edits={
            staff_id: dict(sorted(slots.items()))
            for staff_id, slots in document.pca_slot_edits.items()
        },
        tie_break_decisions=decisions,
        calculations=calculations,
    )


def encode_saved_state(state: SavedState) -> str:
    """Serialise in the current format with stable key order."""
    document = SavedScheduleV2(
        format_version=SAVED_SCHEDULE_V2,
        date_key=state.date_key,
        step=state.step,
        revision=state.revision,
        saved_at=state.saved_at,
        staff_edits={
            staff_id: StaffEditRecord(
                leave=edit.leave,
                fte_remaining=edit.fte_remaining,
                available_slots=list(edit.available_slots),
            )
            for staff_id, edit in state.staff_edits.items()
        },
        ward_bed_edits=dict(state.ward_bed_edits),
        therapist_overrides={
            staff_id: [TeamFTERecord(team=entry.team, fte=entry.fte) for entry in entries]
            for staff_id, entries in state.therapist_overrides.items()
        },
        pca_slot_edits={staff_id: dict(slots) for staff_id, slots in state.pca_slot_edits.items()},
        tie_break_decisions={
            key: TieBreakDecisionRecord(
                context_key=decision.context_key,
                chosen_team=decision.chosen_team,
                decided_by=decision.decided_by,
                decided_at=decision.decided_at,
            )
            for key, decision in state.tie_break_decisions.items()
        },
        calculations=dict(state.calculations) if state.calculations is not None else None,
    )
    return json.dumps(document.model_dump(mode="json"), sort_keys=True)


# -- roster documents ---------------------------------------------------------


class StaffRecord(_Strict):
    staff_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    rank: StaffRank
    team: Optional[Team] = None
    floating: bool = False
    special_programs: list[str] = Field(default_factory=list)
    leave: LeaveKind = LeaveKind.ON_DUTY
    fte_remaining: float = Field(default=1.0, ge=0.0, le=1.0)
    available_slots: list[int] = Field(default_factory=lambda: list(SLOTS))

    @field_validator("leave", mode="before")
    @classmethod
    def normalize_leave(cls, value: Any) -> LeaveKind:
        return _leave(value)

    @field_validator("available_slots")
    @classmethod
    def validate_slots(cls, value: list[int]) -> list[int]:
        return _slots(value)


class WardRecord(_Strict):
    name: str = Field(min_length=1)
    total_beds: int = Field(ge=0)
    team_beds: dict[Team, int] = Field(default_factory=dict)


class SpecialProgramRecord(_Strict):
    program_id: str = Field(min_length=1)
    name: str
    staff_ids: list[str] = Field(default_factory=list)
    weekdays: list[str] = Field(default_factory=list)
    fte_subtraction: dict[str, dict[str, float]] = Field(default_factory=dict)
    therapist_preference_order: dict[Team, list[str]] = Field(default_factory=dict)

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, value: list[str]) -> list[str]:
        return _weekdays(value)


class SlotModesRecord(_Strict):
    am: SlotMode = "AND"
    pm: SlotMode = "AND"


class SPTAllocationRecord(_Strict):
    allocation_id: str = Field(min_length=1)
    staff_id: str = Field(min_length=1)
    teams: list[Team] = Field(default_factory=list)
    weekdays: list[str] = Field(default_factory=list)
    slots: dict[str, list[int]] = Field(default_factory=dict)
    fte_addon: float = Field(ge=0.0, le=1.0)
    slot_modes: dict[str, Union[SlotMode, SlotModesRecord]] = Field(default_factory=dict)
    is_supervisor: bool = False
    active: bool = True

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, value: list[str]) -> list[str]:
        return _weekdays(value)

    @field_validator("slots")
    @classmethod
    def validate_slots(cls, value: dict[str, list[int]]) -> dict[str, list[int]]:
        _weekdays(list(value))
        return {day: _slots(slots) for day, slots in value.items()}


class PCAPreferenceRecord(_Strict):
    team: Team
    preferred_pca_ids: list[str] = Field(default_factory=list)
    preferred_slots: list[int] = Field(default_factory=list)
    avoid_gym_schedule: bool = False
    gym_slot: Optional[int] = Field(default=None, ge=1, le=4)


class RosterDocument(_Strict):
    format_version: Literal["roster/v1"]
    staff: list[StaffRecord] = Field(default_factory=list)
    wards: list[WardRecord] = Field(default_factory=list)
    special_programs: list[SpecialProgramRecord] = Field(default_factory=list)
    spt_allocations: list[SPTAllocationRecord] = Field(default_factory=list)
    pca_preferences: list[PCAPreferenceRecord] = Field(default_factory=list)


def _slot_modes(value: Union[str, SlotModesRecord]) -> SlotModes:
    if isinstance(value, str):
        return SlotModes(am=value, pm=value)
    return SlotModes(am=value.am, pm=value.pm)


def decode_roster(raw: Union[str, bytes, Mapping[str, Any]]) -> RosterSnapshot:
    try:
        if isinstance(raw, (str, bytes)):
            document = RosterDocument.model_validate_json(raw)
        else:
            document = RosterDocument.model_validate(raw)
    except ValidationError as exc:
        raise SnapshotDecodeError(f"invalid roster document: {exc.error_count()} error(s)") from exc

    staff_ids = [record.staff_id for record in document.staff]
    if len(set(staff_ids)) != len(staff_ids):
        raise SnapshotDecodeError("roster contains duplicate staff ids")

    return RosterSnapshot(
        staff=tuple(
            Staff(
                staff_id=record.staff_id,
                name=record.name,
                rank=record.rank,
                team=record.team,
                floating=record.floating,
                special_programs=tuple(record.special_programs),
                leave=record.leave,
                fte_remaining=record.fte_remaining,
                available_slots=tuple(record.available_slots),
            )
            for record in document.staff
        ),
        wards=tuple(
            Ward(name=record.name, total_beds=record.total_beds, team_beds=dict(record.team_beds))
            for record in document.wards
        ),
        special_programs=tuple(
            SpecialProgram(
                program_id=record.program_id,
                name=record.name,
                staff_ids=tuple(record.staff_ids),
                weekdays=tuple(record.weekdays),
                fte_subtraction={
                    staff_id: dict(days) for staff_id, days in record.fte_subtraction.items()
                },
                therapist_preference_order={
                    team: tuple(order) for team, order in record.therapist_preference_order.items()
                },
            )
            for record in document.special_programs
        ),
        spt_allocations=tuple(
            SPTAllocation(
                allocation_id=record.allocation_id,
                staff_id=record.staff_id,
                teams=tuple(record.teams),
                weekdays=tuple(record.weekdays),
                slots={day: tuple(slots) for day, slots in record.slots.items()},
                fte_addon=record.fte_addon,
                slot_modes={day: _slot_modes(mode) for day, mode in record.slot_modes.items()},
                is_supervisor=record.is_supervisor,
                active=record.active,
            )
            for record in document.spt_allocations
        ),
        pca_preferences=tuple(
            PCAPreference(
                team=record.team,
                preferred_pca_ids=tuple(record.preferred_pca_ids),
                preferred_slots=tuple(record.preferred_slots),
                avoid_gym_schedule=record.avoid_gym_schedule,
                gym_slot=record.gym_slot,
            )
            for record in document.pca_preferences
        ),
    )


def encode_roster(roster: RosterSnapshot) -> str:
    document = RosterDocument(
        format_version=ROSTER_V1,
        staff=[
            StaffRecord(
                staff_id=member.staff_id,
                name=member.name,
                rank=member.rank,
                team=member.team,
                floating=member.floating,
                special_programs=list(member.special_programs),
                leave=member.leave,
                fte_remaining=member.fte_remaining,
                available_slots=list(member.available_slots),
            )
            for member in roster.staff
        ],
        wards=[
            WardRecord(name=ward.name, total_beds=ward.total_beds, team_beds=dict(ward.team_beds))
            for ward in roster.wards
        ],
        special_programs=[
            SpecialProgramRecord(
                program_id=program.program_id,
                name=program.name,
                staff_ids=list(program.staff_ids),
                weekdays=list(program.weekdays),
                fte_subtraction={
                    staff_id: dict(days) for staff_id, days in program.fte_subtraction.items()
                },
                therapist_preference_order={
                    team: list(order) for team, order in program.therapist_preference_order.items()
                },
            )
            for program in roster.special_programs
        ],
        spt_allocations=[
            SPTAllocationRecord(
                allocation_id=item.allocation_id,
                staff_id=item.staff_id,
                teams=list(item.teams),
                weekdays=list(item.weekdays),
                slots={day: list(slots) for day, slots in item.slots.items()},
                fte_addon=item.fte_addon,
                slot_modes={
                    day: SlotModesRecord(am=modes.am, pm=modes.pm)
                    for day, modes in item.slot_modes.items()
                },
                is_supervisor=item.is_supervisor,
                active=item.active,
            )
            for item in roster.spt_allocations
        ],
        pca_preferences=[
            PCAPreferenceRecord(
                team=preference.team,
                preferred_pca_ids=list(preference.preferred_pca_ids),
                preferred_slots=list(preference.preferred_slots),
                avoid_gym_schedule=preference.avoid_gym_schedule,
                gym_slot=preference.gym_slot,
            )
            for preference in roster.pca_preferences
        ],
    )
    return json.dumps(document.model_dump(mode="json"), sort_keys=True)
