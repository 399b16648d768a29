"""
Approval State Machine.

States are the stages of the configured chain plus the terminal markers
``completed`` and ``rejected``. Approval moves a request to the next stage in
the chain (the stage after the last one is ``completed``), rejection jumps to
``rejected`` from anywhere, and escalation marks the current stage skipped and
moves on. Nothing leaves a terminal state.

Every write is a conditional update keyed on the level and version the
decision was made against. A human decision that loses a race is re-evaluated
from scratch; an escalation that loses a race is dropped, since the request
has moved on without it.
"""

from shared.logging import get_logger

from .clock import Clock, SystemClock
from .config import WorkflowConfig
from .errors import (
    AlreadyClosedError, ConcurrencyConflictError, NotFoundError,
    OutOfScopeError, StageMismatchError,
)
from .events import EventDispatcher, WorkflowAction, WorkflowEvent
from .models import (
    Request, FinalStatus, RequestType, Stage, StepStatus, TerminalLevel,
    approval_step, with_step,
)
from .reservation import ReservationCoordinator
from .schemas import Actor
from .store import RequestStore

logger = get_logger(__name__)

ESCALATION_REMARK = "Auto-escalated due to SLA breach"


class ApprovalStateMachine:
    """Legal stage transitions, approver authority and terminal outcomes."""

    def __init__(self, requests: RequestStore, coordinator: ReservationCoordinator,
                 config: WorkflowConfig | None = None, clock: Clock | None = None,
                 events: EventDispatcher | None = None):
        self.requests = requests
        self.coordinator = coordinator
        self.config = config or WorkflowConfig()
        self.clock = clock or SystemClock()
        self.events = events or EventDispatcher()

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _load(self, request_id: int) -> Request:
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError("Request not found", request_id=request_id)
        return request

    def _authorize(self, request: Request, actor: Actor) -> Stage:
        """Run the scope, open and stage checks; return the actor's stage."""
        if actor.organization_id != request.organization_id:
            logger.warning(
                f"Out-of-scope decision on request {request.id} by {actor.actor_id} "
                f"(organization {actor.organization_id})"
            )
            raise OutOfScopeError(
                "Request belongs to a different organization", request_id=request.id
            )
        if request.final_status != FinalStatus.PENDING.value or request.is_terminal:
            raise AlreadyClosedError(
                f"Request is already {request.final_status}", request_id=request.id
            )
        stage = self.config.stage_for_role(actor.role)
        if stage is None or stage.value != request.current_level:
            logger.warning(
                f"UNAUTHORIZED_DECISION | requestId={request.id} | attemptedBy={actor.actor_id} "
                f"| role={actor.role} | expected={request.current_level}"
            )
            raise StageMismatchError(
                f"You cannot act at this stage. Current stage: {request.current_level}",
                request_id=request.id, current_level=request.current_level, role=actor.role,
            )
        return stage

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def approve(self, request_id: int, actor: Actor, remarks: str = "") -> Request:
        """Record an approval at the current stage and advance.

        Asset-transfer requests have a single approval gate: the approval is
        recorded but the stage does not move; fulfillment closes them.
        """
        for _ in range(self.config.max_retries):
            request = self._load(request_id)
            stage = self._authorize(request, actor)
            now = self.clock.now()

            if request.request_type == RequestType.ASSET_TRANSFER.value:
                next_level = request.current_level
            else:
                next_level = self.config.successor(stage)

            values = {
                "approval_flow": with_step(
                    request.approval_flow, stage.value,
                    approval_step(StepStatus.APPROVED, actor.actor_id, now, remarks),
                ),
                "current_level": next_level,
                "last_action_at": now,
            }
            if next_level == TerminalLevel.COMPLETED.value:
                values["final_status"] = FinalStatus.APPROVED.value

            if not self.requests.conditional_update(request.id, stage.value, values, request.version):
                continue

            request = self.requests.get(request.id)
            logger.info(
                f"REQUEST_APPROVED | requestId={request.id} | level={stage.value} "
                f"| next={next_level} | by={actor.actor_id}"
            )
            self.events.emit(WorkflowEvent(
                action=WorkflowAction.REQUEST_APPROVED,
                request_id=request.id,
                occurred_at=now,
                actor_id=actor.actor_id,
                from_level=stage.value,
                to_level=next_level,
                organization_id=request.organization_id,
                hospital_id=request.hospital_id,
                details={"remarks": remarks or ""},
            ))
            if next_level == TerminalLevel.COMPLETED.value:
                self.coordinator.settle(request)
            return request

        raise ConcurrencyConflictError(
            "Request kept changing while approving; retry", request_id=request_id
        )

    def reject(self, request_id: int, actor: Actor, remarks: str = "") -> Request:
        """Close the request as rejected and release every asset it holds."""
        for _ in range(self.config.max_retries):
            request = self._load(request_id)
            stage = self._authorize(request, actor)
            now = self.clock.now()

            values = {
                "approval_flow": with_step(
                    request.approval_flow, stage.value,
                    approval_step(StepStatus.REJECTED, actor.actor_id, now, remarks),
                ),
                "current_level": TerminalLevel.REJECTED.value,
                "final_status": FinalStatus.REJECTED.value,
                "last_action_at": now,
            }
            if not self.requests.conditional_update(request.id, stage.value, values, request.version):
                continue

            released = self.coordinator.release(request.id)
            request = self.requests.get(request.id)
            logger.info(
                f"REQUEST_REJECTED | requestId={request.id} | level={stage.value} "
                f"| by={actor.actor_id} | remarks={remarks or 'NA'} | released={released}"
            )
            self.events.emit(WorkflowEvent(
                action=WorkflowAction.REQUEST_REJECTED,
                request_id=request.id,
                occurred_at=now,
                actor_id=actor.actor_id,
                from_level=stage.value,
                to_level=TerminalLevel.REJECTED.value,
                organization_id=request.organization_id,
                hospital_id=request.hospital_id,
                details={"remarks": remarks or "", "released": released},
            ))
            return request

        raise ConcurrencyConflictError(
            "Request kept changing while rejecting; retry", request_id=request_id
        )

    def escalate(self, request_id: int, expected_level: str | None = None,
                 expected_version: int | None = None) -> Request | None:
        """Skip the current stage after an SLA breach.

        Returns None when there is nothing to do: the request is closed, its
        current step is no longer pending, its next stage would be
        ``completed`` or lies outside its own flow, or it no longer matches
        the level/version the caller saw. Asset transfers are never escalated.
        """
        request = self._load(request_id)
        level = request.current_level
        if request.final_status != FinalStatus.PENDING.value or request.is_terminal:
            return None
        if request.request_type == RequestType.ASSET_TRANSFER.value:
            return None
        if expected_level is not None and level != expected_level:
            return None
        if expected_version is not None and request.version != expected_version:
            return None

        flow = request.approval_flow or {}
        step = flow.get(level) or {}
        if step.get("status") != StepStatus.PENDING.value:
            return None

        next_level = self.config.successor(level)
        if next_level == TerminalLevel.COMPLETED.value or next_level not in flow:
            return None

        now = self.clock.now()
        values = {
            "approval_flow": with_step(
                request.approval_flow, level,
                approval_step(StepStatus.SKIPPED, None, now, ESCALATION_REMARK),
            ),
            "current_level": next_level,
            "last_action_at": now,
        }
        if not self.requests.conditional_update(request.id, level, values, request.version):
            logger.info(f"Escalation of request {request.id} dropped; it changed concurrently")
            return None

        request = self.requests.get(request.id)
        logger.info(f"Escalated request {request.id} from {level} to {next_level}")
        self.events.emit(WorkflowEvent(
            action=WorkflowAction.REQUEST_ESCALATED,
            request_id=request.id,
            occurred_at=now,
            from_level=level,
            to_level=next_level,
            organization_id=request.organization_id,
            hospital_id=request.hospital_id,
            details={"remarks": ESCALATION_REMARK},
        ))
        return request
