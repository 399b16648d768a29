"""
RequestService: the inbound operations of the workflow engine.

One service wraps one database session. Each public method is a unit of work:
it commits when the operation succeeds and rolls back when it raises, so a
failed operation leaves nothing behind.
"""

from typing import Callable, TypeVar

from sqlalchemy.orm import Session

from shared.logging import get_logger

from .approval import ApprovalStateMachine
from .clock import Clock, SystemClock
from .config import WorkflowConfig
from .errors import (
    AlreadyClosedError, AssetConflictError, ConcurrencyConflictError,
    NotFoundError, OutOfScopeError, StageMismatchError, ValidationError,
)
from .events import EventDispatcher, WorkflowAction, WorkflowEvent
from .models import (
    Asset, Request, FinalStatus, StepStatus, UtilizationStatus, approval_step,
)
from .reservation import ReservationCoordinator, normalize_asset_ids
from .schemas import Actor, RequestCreate
from .store import AssetLedger, RequestStore

logger = get_logger(__name__)

T = TypeVar("T")


class RequestService:
    """Creates requests and routes decisions to the state machine and coordinator."""

    def __init__(self, db: Session, config: WorkflowConfig | None = None,
                 clock: Clock | None = None, events: EventDispatcher | None = None):
        self.db = db
        self.config = config or WorkflowConfig()
        self.clock = clock or SystemClock()
        self.events = events or EventDispatcher()
        self.assets = AssetLedger(db)
        self.requests = RequestStore(db)
        self.coordinator = ReservationCoordinator(
            self.assets, self.requests, self.config, self.clock, self.events
        )
        self.machine = ApprovalStateMachine(
            self.requests, self.coordinator, self.config, self.clock, self.events
        )

    def _unit_of_work(self, operation: Callable[[], T]) -> T:
        try:
            result = operation()
            self.db.commit()
            return result
        except Exception:
            self.db.rollback()
            raise

    def _get_request(self, request_id: int) -> Request:
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError("Request not found", request_id=request_id)
        return request

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_request(self, actor: Actor, payload: RequestCreate) -> Request:
        """Create a request; asset-specific requests reserve their assets at once."""
        has_assets = bool(payload.requested_asset_ids)
        has_count = payload.requested_count is not None
        if has_assets == has_count:
            raise ValidationError(
                "Provide either requested_asset_ids or requested_count, not both or neither"
            )
        if has_count and payload.requested_count < 1:
            raise ValidationError("requested_count must be a positive integer")
        asset_ids = normalize_asset_ids(payload.requested_asset_ids) if has_assets else []

        scope = payload.scope
        missing = [
            name for name in ("department_id", "hospital_id", "organization_id")
            if not getattr(scope, name)
        ]
        if missing:
            raise ValidationError(f"Scope is missing {', '.join(missing)}", missing=missing)
        if scope.organization_id != actor.organization_id:
            raise OutOfScopeError("Cannot raise a request for another organization")

        request_type = payload.request_type.value
        initial = self.config.initial_stage(request_type, scope.level.value)
        flow = {
            stage.value: approval_step(StepStatus.PENDING)
            for stage in self.config.stages_for(request_type, initial)
        }

        def create() -> Request:
            now = self.clock.now()
            request = self.requests.add(Request(
                request_type=request_type,
                requested_by=actor.actor_id,
                asset_category=payload.asset_category,
                asset_name=payload.asset_name,
                justification=payload.justification,
                priority=payload.priority.value,
                estimated_cost=payload.estimated_cost,
                requested_asset_ids=asset_ids,
                requested_count=payload.requested_count if has_count else None,
                fulfilled_count=0,
                fulfilled_assets=[],
                rejected_assets=[],
                approval_flow=flow,
                current_level=initial.value,
                final_status=FinalStatus.PENDING.value,
                scope_level=scope.level.value,
                department_id=scope.department_id,
                hospital_id=scope.hospital_id,
                organization_id=scope.organization_id,
                escalation_enabled=payload.escalation_enabled,
                escalate_after_hours=payload.escalate_after_hours or self.config.escalate_after_hours,
                last_action_at=now,
                created_at=now,
                updated_at=now,
            ))
            if asset_ids:
                self.coordinator.reserve(request.id, scope.department_id, asset_ids)
            logger.info(
                f"REQUEST_CREATED | requestId={request.id} | type={request_type} "
                f"| qty={request.total_requested} | dept={scope.department_id} | by={actor.actor_id}"
            )
            self.events.emit(WorkflowEvent(
                action=WorkflowAction.REQUEST_CREATED,
                request_id=request.id,
                occurred_at=now,
                actor_id=actor.actor_id,
                to_level=initial.value,
                organization_id=scope.organization_id,
                hospital_id=scope.hospital_id,
                details={"request_type": request_type, "asset_ids": asset_ids,
                         "requested_count": request.requested_count},
            ))
            return self.requests.get(request.id)

        return self._unit_of_work(create)

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def approve_request(self, request_id: int, actor: Actor, remarks: str = "") -> Request:
        return self._unit_of_work(lambda: self.machine.approve(request_id, actor, remarks))

    def reject_request(self, request_id: int, actor: Actor, remarks: str = "") -> Request:
        return self._unit_of_work(lambda: self.machine.reject(request_id, actor, remarks))

    # -------------------------------------------------------------------------
    # Assets against a request
    # -------------------------------------------------------------------------

    def reserve_specific_assets(self, request_id: int, actor: Actor, asset_ids: list[int]) -> Request:
        """Offer assets from the actor's department against a count-based request."""
        ids = normalize_asset_ids(asset_ids)

        def reserve() -> Request:
            request = self._get_request(request_id)
            self.coordinator.check_hospital(request, actor.hospital_id)
            if request.final_status != FinalStatus.PENDING.value or request.is_terminal:
                raise AlreadyClosedError(f"Request is already {request.final_status}", request_id=request_id)
            if not request.is_count_mode:
                raise ValidationError(
                    "Asset-specific requests reserve their assets when created",
                    request_id=request_id,
                )
            held = len(self.assets.reserved_for(request.id))
            outstanding = request.requested_count - request.fulfilled_count - held
            if len(ids) > outstanding:
                raise ValidationError(
                    f"Request needs {max(outstanding, 0)} more asset(s); {len(ids)} offered",
                    request_id=request_id, outstanding=max(outstanding, 0),
                )
            elsewhere = [
                a.id for a in self.assets.get_many(ids)
                if a.current_department_id != actor.department_id
            ]
            if elsewhere:
                raise OutOfScopeError(
                    "Only assets held by your department can be offered",
                    request_id=request_id, asset_ids=elsewhere,
                )
            # Claim the request row first so concurrent offers cannot overshoot
            if not self.requests.conditional_update(
                request.id, request.current_level, {"updated_at": self.clock.now()}, request.version
            ):
                raise ConcurrencyConflictError("Request changed while reserving; retry", request_id=request_id)
            self.coordinator.reserve(request.id, actor.department_id, ids)
            return self.requests.get(request.id)

        return self._unit_of_work(reserve)

    def fulfill_request(self, request_id: int, actor: Actor, asset_ids: list[int]) -> Request:
        def fulfill() -> Request:
            self.coordinator.check_hospital(self._get_request(request_id), actor.hospital_id)
            return self.coordinator.fulfill(request_id, asset_ids, actor.actor_id)

        return self._unit_of_work(fulfill)

    def reject_request_assets(self, request_id: int, actor: Actor, asset_ids: list[int],
                              remarks: str = "") -> Request:
        def reject_assets() -> Request:
            self.coordinator.check_hospital(self._get_request(request_id), actor.hospital_id)
            return self.coordinator.reject_assets(request_id, asset_ids, remarks, actor.actor_id)

        return self._unit_of_work(reject_assets)

    def update_utilization(self, asset_id: int, actor: Actor, status: UtilizationStatus) -> Asset:
        """Change an asset's utilization by hand; refused while it is reserved."""
        status = UtilizationStatus(status)

        def update() -> Asset:
            asset = self.assets.get(asset_id)
            if asset is None:
                raise NotFoundError("Asset not found", asset_id=asset_id)
            if asset.hospital_id != actor.hospital_id:
                raise OutOfScopeError("Asset belongs to a different hospital", asset_id=asset_id)
            if asset.is_reserved:
                raise AssetConflictError(
                    f"Asset is reserved by request {asset.reserved_request_id}",
                    requested=[asset_id], unavailable=[asset_id],
                )
            previous = asset.utilization_status
            won = self.assets.conditional_update(
                asset_id,
                expected={"is_reserved": False, "utilization_status": previous},
                values={"utilization_status": status.value},
            )
            if not won:
                raise AssetConflictError(
                    "Asset changed concurrently", requested=[asset_id], unavailable=[asset_id]
                )
            self.events.emit(WorkflowEvent(
                action=WorkflowAction.ASSET_UTILIZATION_CHANGED,
                request_id=None,
                occurred_at=self.clock.now(),
                actor_id=actor.actor_id,
                hospital_id=asset.hospital_id,
                details={"asset_id": asset_id, "from": previous, "to": status.value},
            ))
            return self.assets.get(asset_id)

        return self._unit_of_work(update)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_request(self, request_id: int, actor: Actor | None = None) -> Request:
        """Load a request; with an actor, only from the actor's organization."""
        request = self._get_request(request_id)
        if actor is not None and actor.organization_id != request.organization_id:
            raise OutOfScopeError("Request belongs to a different organization", request_id=request_id)
        return request

    def list_pending_for_actor(self, actor: Actor) -> list[Request]:
        """Pending requests waiting at the actor's stage, oldest first."""
        stage = self.config.stage_for_role(actor.role)
        if stage is None:
            raise StageMismatchError("Not part of approval workflow", role=actor.role)
        return self.requests.pending_at(stage.value, actor.organization_id)

    def list_my_requests(self, actor: Actor) -> list[Request]:
        return self.requests.raised_by(actor.actor_id)

    def list_open_requests(self, actor: Actor) -> list[Request]:
        """Count-based requests from other departments that still need assets."""
        return [
            r for r in self.requests.open_count_requests(actor.hospital_id, actor.department_id)
            if r.fulfilled_count < r.total_requested
        ]

    def list_available_assets(self, department_id: str, actor: Actor | None = None) -> list[Asset]:
        hospital_id = actor.hospital_id if actor is not None else None
        return self.assets.available_in_department(department_id, hospital_id)
