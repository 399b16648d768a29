"""Audit and notification sinks.

The engine reports every state transition to an audit sink and every stage
change to a notification sink. Both are fire-and-forget: a sink that raises
is logged and ignored, it never blocks or undoes the transition.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from shared.logging import get_logger

logger = get_logger(__name__)


class WorkflowAction(str, Enum):
    REQUEST_CREATED = "REQUEST_CREATED"
    REQUEST_APPROVED = "REQUEST_APPROVED"
    REQUEST_REJECTED = "REQUEST_REJECTED"
    REQUEST_ESCALATED = "REQUEST_ESCALATED"
    REQUEST_COMPLETED = "REQUEST_COMPLETED"
    ASSETS_RESERVED = "ASSETS_RESERVED"
    ASSETS_RELEASED = "ASSETS_RELEASED"
    ASSETS_FULFILLED = "ASSETS_FULFILLED"
    ASSETS_REJECTED = "ASSETS_REJECTED"
    ASSET_UTILIZATION_CHANGED = "ASSET_UTILIZATION_CHANGED"


@dataclass
class WorkflowEvent:
    """One state transition, as seen by audit and notification sinks."""
    action: WorkflowAction
    request_id: int | None
    occurred_at: datetime
    actor_id: str | None = None
    from_level: str | None = None
    to_level: str | None = None
    organization_id: str | None = None
    hospital_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def changes_stage(self) -> bool:
        return self.from_level is not None and self.from_level != self.to_level


class AuditSink(Protocol):
    def record(self, event: WorkflowEvent) -> None:
        ...


class NotificationSink(Protocol):
    def notify(self, event: WorkflowEvent) -> None:
        ...


class LoggingAuditSink:
    """Writes one audit line per transition to the workflow log."""

    def __init__(self, name: str = "asset_workflow.audit"):
        self._logger = get_logger(name)

    def record(self, event: WorkflowEvent) -> None:
        self._logger.info(
            f"{event.action.value} | requestId={event.request_id} | by={event.actor_id or 'system'}"
            f" | level={event.from_level}->{event.to_level} | details={event.details}"
        )


class LoggingNotificationSink:
    """Logs stage changes in place of a delivery channel."""

    def __init__(self, name: str = "asset_workflow.notifications"):
        self._logger = get_logger(name)

    def notify(self, event: WorkflowEvent) -> None:
        self._logger.info(
            f"Request {event.request_id} moved from {event.from_level} to {event.to_level}"
        )


class EventDispatcher:
    """Fans transitions out to the sinks without letting them fail the caller."""

    def __init__(self, audit: AuditSink | None = None,
                 notifications: NotificationSink | None = None):
        self.audit = audit or LoggingAuditSink()
        self.notifications = notifications or LoggingNotificationSink()

    def emit(self, event: WorkflowEvent) -> None:
        try:
            self.audit.record(event)
        except Exception:
            logger.warning(
                f"Audit sink failed for {event.action.value} on request {event.request_id}",
                exc_info=True,
            )
        if not event.changes_stage:
            return
        try:
            self.notifications.notify(event)
        except Exception:
            logger.warning(
                f"Notification sink failed for request {event.request_id}",
                exc_info=True,
            )
