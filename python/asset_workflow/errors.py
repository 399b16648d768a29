"""Typed errors raised by the asset workflow engine.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer should answer with, so handlers never parse messages:

    WorkflowError
    +-- ValidationError          400  malformed or contradictory input
    +-- NotFoundError            404  unknown request or asset
    +-- StageMismatchError       403  actor not authorised at the current stage
    +-- OutOfScopeError          403  organization isolation violated
    +-- CrossHospitalDeniedError 403  hospital isolation violated
    +-- AlreadyClosedError       409  mutating a terminal request
    +-- AssetConflictError       409  reservation/fulfillment set not satisfiable
    +-- ConcurrencyConflictError 409  lost the optimistic race too many times
"""

from typing import Any


class WorkflowError(Exception):
    """Base class for all engine errors."""

    code = "workflow_error"
    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        if self.details:
            payload["context"] = self.details
        return payload


class ValidationError(WorkflowError):
    code = "validation_error"
    status_code = 400


class NotFoundError(WorkflowError):
    code = "not_found"
    status_code = 404


class StageMismatchError(WorkflowError):
    code = "stage_mismatch"
    status_code = 403


class OutOfScopeError(WorkflowError):
    code = "out_of_scope"
    status_code = 403


class CrossHospitalDeniedError(WorkflowError):
    code = "cross_hospital_denied"
    status_code = 403


class AlreadyClosedError(WorkflowError):
    code = "already_closed"
    status_code = 409


class AssetConflictError(WorkflowError):
    """Raised when not every asset in a batch satisfies the precondition.

    State is left untouched; callers may retry after re-checking availability.
    """

    code = "asset_conflict"
    status_code = 409

    def __init__(self, message: str, requested: list[int] | None = None,
                 unavailable: list[int] | None = None):
        super().__init__(message, requested=requested or [], unavailable=unavailable or [])
        self.requested = requested or []
        self.unavailable = unavailable or []


class ConcurrencyConflictError(WorkflowError):
    code = "concurrency_conflict"
    status_code = 409
