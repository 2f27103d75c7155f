"""Error taxonomy shared by the allocators, the state layers and the workflow."""

from __future__ import annotations

from dataclasses import dataclass


class AllocationError(Exception):
    """Base class for every error raised by the allocation engine."""


class PreconditionViolation(AllocationError):
    """Raised when inputs make a computation meaningless (zero on-duty counts,
    malformed leave type, a slot outside a PCA's availability)."""


class StepLockedError(PreconditionViolation):
    """Raised when an edit targets a workflow step that is not open yet."""


class PersistenceFailure(AllocationError):
    """Raised by the persistence collaborator when a load or save fails."""


class SnapshotDecodeError(AllocationError):
    """Raised when persisted JSON does not match any known saved-state shape."""


RECONCILIATION_OVERFLOW = "RECONCILIATION_OVERFLOW"
THERAPIST_OVERALLOCATED = "THERAPIST_OVERALLOCATED"
UNMET_PCA_NEED = "UNMET_PCA_NEED"
THERAPIST_NOT_ON_DUTY = "THERAPIST_NOT_ON_DUTY"


@dataclass(frozen=True)
class ValidationIssue:
    """A non-fatal problem attached to an allocator's output."""

    code: str
    message: str
    blocking: bool = True
