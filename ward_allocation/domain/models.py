"""Domain models for ward staff, configuration and allocation records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Mapping, Optional, Union

from ward_allocation.domain.errors import PreconditionViolation, ValidationIssue


class Team(str, Enum):
    FO = "FO"
    SMM = "SMM"
    SFM = "SFM"
    CPPC = "CPPC"
    MC = "MC"
    GMC = "GMC"
    NSM = "NSM"
    DRO = "DRO"


TEAMS: tuple[Team, ...] = tuple(Team)
SLOTS: tuple[int, ...] = (1, 2, 3, 4)
AM_SLOTS: tuple[int, ...] = (1, 2)
PM_SLOTS: tuple[int, ...] = (3, 4)
WEEKDAYS: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class StaffRank(str, Enum):
    SPT = "SPT"
    APPT = "APPT"
    RPT = "RPT"
    PCA = "PCA"
    WORKMAN = "workman"


THERAPIST_RANKS = frozenset({StaffRank.SPT, StaffRank.APPT, StaffRank.RPT})


class LeaveKind(str, Enum):
    ON_DUTY = "on duty"
    VL = "VL"
    HALF_DAY_VL = "half day VL"
    TIL = "TIL"
    SDO = "SDO"
    SICK_LEAVE = "sick leave"
    STUDY_LEAVE = "study leave"
    MEDICAL_FOLLOW_UP = "medical follow-up"
    OTHERS = "others"


LEAVE_DEFAULT_FTE: dict[LeaveKind, float] = {
    LeaveKind.ON_DUTY: 1.0,
    LeaveKind.VL: 0.0,
    LeaveKind.HALF_DAY_VL: 0.5,
    LeaveKind.TIL: 0.0,
    LeaveKind.SDO: 0.0,
    LeaveKind.SICK_LEAVE: 0.0,
    LeaveKind.STUDY_LEAVE: 0.0,
    LeaveKind.MEDICAL_FOLLOW_UP: 0.0,
    LeaveKind.OTHERS: 0.0,
}

_LEAVE_BY_LABEL = {kind.value.lower(): kind for kind in LeaveKind}
_ON_DUTY_LABELS = frozenset({"", "none", "on duty", "on duty (no leave)"})


def normalize_leave_type(raw: Union[str, LeaveKind, None]) -> LeaveKind:
    """Map any accepted leave representation onto ``LeaveKind``.

    This is the only place that interprets leave strings. Unknown labels are
    rejected rather than treated as leave.
    """
    if raw is None:
        return LeaveKind.ON_DUTY
    if isinstance(raw, LeaveKind):
        return raw
    if not isinstance(raw, str):
        raise PreconditionViolation(f"leave type must be a string, got {type(raw).__name__}")
    label = raw.strip().lower()
    if label in _ON_DUTY_LABELS or label.startswith("on duty"):
        return LeaveKind.ON_DUTY
    kind = _LEAVE_BY_LABEL.get(label)
    if kind is None:
        raise PreconditionViolation(f"unknown leave type: {raw!r}")
    return kind


def parse_team(raw: Union[str, Team]) -> Team:
    try:
        return Team(raw)
    except ValueError as exc:
        raise PreconditionViolation(f"unknown team: {raw!r}") from exc


def to_date_key(value: Union[date, datetime, str]) -> str:
    """Return the ``YYYY-MM-DD`` calendar key for a schedule date.

    Datetimes contribute their own calendar date; no time zone conversion is
    applied, so the same wall-clock day always maps to the same key.
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(value.strip()[:10]).isoformat()
    except ValueError as exc:
        raise PreconditionViolation(f"schedule date must follow YYYY-MM-DD: {value!r}") from exc


def weekday_for(date_key: str) -> str:
    return WEEKDAYS[date.fromisoformat(date_key).weekday()]


def empty_team_map(default: float = 0.0) -> dict[Team, float]:
    return {team: default for team in TEAMS}


class DutyKind(str, Enum):
    ORDINARY = "ordinary"
    SPECIAL_PROGRAM = "special-program"
    SPT = "spt"


class AssignmentPhase(str, Enum):
    NON_FLOATING = "non-floating"
    MANUAL_OVERRIDE = "manual-override"
    FLOOR_MATCH = "floor-match"
    REMAINDER = "remainder"
    TIE_BREAK = "tie-break"


class AssignmentOutcome(str, Enum):
    ASSIGNED = "assigned"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Staff:
    staff_id: str
    name: str
    rank: StaffRank
    team: Optional[Team] = None
    floating: bool = False
    special_programs: tuple[str, ...] = ()
    leave: LeaveKind = LeaveKind.ON_DUTY
    fte_remaining: float = 1.0
    available_slots: tuple[int, ...] = SLOTS

    @property
    def is_therapist(self) -> bool:
        return self.rank in THERAPIST_RANKS

    @property
    def is_pca(self) -> bool:
        return self.rank == StaffRank.PCA

    @property
    def is_on_duty(self) -> bool:
        return self.leave == LeaveKind.ON_DUTY and self.fte_remaining > 0


@dataclass(frozen=True)
class StaffEdit:
    """The day's leave/FTE input for one staff member."""

    leave: LeaveKind
    fte_remaining: float
    available_slots: tuple[int, ...] = SLOTS


@dataclass(frozen=True)
class Ward:
    name: str
    total_beds: int
    team_beds: Mapping[Team, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SpecialProgram:
    program_id: str
    name: str
    staff_ids: tuple[str, ...]
    weekdays: tuple[str, ...]
    fte_subtraction: Mapping[str, Mapping[str, float]] = field(default_factory=dict)
    therapist_preference_order: Mapping[Team, tuple[str, ...]] = field(default_factory=dict)

    def subtraction_for(self, staff_id: str, weekday: str) -> float:
        return float(self.fte_subtraction.get(staff_id, {}).get(weekday, 0.0))


@dataclass(frozen=True)
class SlotModes:
    """How to read a multi-slot half day: ``AND`` takes all, ``OR`` the first."""

    am: str = "AND"
    pm: str = "AND"


@dataclass(frozen=True)
class SPTAllocation:
    allocation_id: str
    staff_id: str
    teams: tuple[Team, ...]
    weekdays: tuple[str, ...]
    slots: Mapping[str, tuple[int, ...]]
    fte_addon: float
    slot_modes: Mapping[str, SlotModes] = field(default_factory=dict)
    is_supervisor: bool = False
    active: bool = True


@dataclass(frozen=True)
class PCAPreference:
    team: Team
    preferred_pca_ids: tuple[str, ...] = ()
    preferred_slots: tuple[int, ...] = ()
    avoid_gym_schedule: bool = False
    gym_slot: Optional[int] = None


@dataclass(frozen=True)
class RosterSnapshot:
    """Read-only configuration supplied by the roster provider."""

    staff: tuple[Staff, ...] = ()
    wards: tuple[Ward, ...] = ()
    special_programs: tuple[SpecialProgram, ...] = ()
    spt_allocations: tuple[SPTAllocation, ...] = ()
    pca_preferences: tuple[PCAPreference, ...] = ()

    def staff_by_id(self) -> dict[str, Staff]:
        return {member.staff_id: member for member in self.staff}

    def preference_for(self, team: Team) -> Optional[PCAPreference]:
        for preference in self.pca_preferences:
            if preference.team == team:
                return preference
        return None


@dataclass(frozen=True)
class TeamFTE:
    team: Team
    fte: float


@dataclass(frozen=True)
class BedAllocation:
    from_team: Team
    to_team: Team
    ward: Optional[str]
    num_beds: int


@dataclass(frozen=True)
class TherapistAllocation:
    staff_id: str
    team: Team
    duty_kind: DutyKind
    fte: float
    slots: Mapping[int, Team]
    program_ids: tuple[str, ...] = ()
    is_manual_override: bool = False
    is_substitute_team_head: bool = False


@dataclass(frozen=True)
class PCAAllocation:
    staff_id: str
    team: Team
    slots: Mapping[int, Team]
    is_floating: bool
    fte_assigned: float
    fte_remaining: float

    @property
    def assigned_slots(self) -> frozenset[int]:
        return frozenset(self.slots)


@dataclass(frozen=True)
class SlotAssignmentLog:
    slot: Optional[int]
    pca_id: Optional[str]
    team: Team
    phase: AssignmentPhase
    outcome: AssignmentOutcome
    reason: str
    allocation_order: int
    was_preferred_pca: bool = False
    was_preferred_slot: bool = False


@dataclass(frozen=True)
class TeamAllocationLog:
    team: Team
    assignments: tuple[SlotAssignmentLog, ...]
    target_fte: float
    assigned_fte: float
    pending_fte: float


@dataclass(frozen=True)
class TieBreakRequest:
    context_key: str
    tied_teams: tuple[Team, ...]
    candidate_pca_ids: tuple[str, ...]
    pending_fte: float
    phase: AssignmentPhase


@dataclass(frozen=True)
class TieBreakDecision:
    context_key: str
    chosen_team: Team
    decided_by: str
    decided_at: str


@dataclass(frozen=True)
class ScheduleCalculations:
    """Algorithm-State snapshot for one schedule date."""

    date_key: str
    total_beds: int
    beds_per_team: Mapping[Team, int]
    total_pt_on_duty: float
    pt_per_team: Mapping[Team, float]
    beds_per_pt: float
    beds_for_relieving: Mapping[Team, int]
    total_pca_on_duty: float
    average_pca_per_team: Mapping[Team, float]
    bed_allocations: tuple[BedAllocation, ...]
    bed_optimization_score: float
    therapist_allocations: tuple[TherapistAllocation, ...]
    therapist_pt_per_team: Mapping[Team, float]
    pca_allocations: tuple[PCAAllocation, ...]
    pending_pca_per_team: Mapping[Team, float]
    team_logs: tuple[TeamAllocationLog, ...]
    tie_break_requests: tuple[TieBreakRequest, ...]
    issues: tuple[ValidationIssue, ...]
