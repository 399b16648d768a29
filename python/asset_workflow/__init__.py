"""Request approval and asset reservation engine for hospital asset transfers."""

from .config import WorkflowConfig
from .errors import (
    WorkflowError, ValidationError, NotFoundError, StageMismatchError,
    OutOfScopeError, CrossHospitalDeniedError, AlreadyClosedError,
    AssetConflictError, ConcurrencyConflictError,
)
from .service import RequestService
from .escalation import EscalationScheduler

__all__ = [
    'WorkflowConfig', 'RequestService', 'EscalationScheduler',
    'WorkflowError', 'ValidationError', 'NotFoundError', 'StageMismatchError',
    'OutOfScopeError', 'CrossHospitalDeniedError', 'AlreadyClosedError',
    'AssetConflictError', 'ConcurrencyConflictError',
]
