"""
Reservation Coordinator.

Keeps every asset claimed by at most one open request and keeps asset state in
step with the request lifecycle. Batch operations (reserve, fulfill,
reject_assets) are all-or-nothing: the whole set is checked before anything is
written, then each asset is written with its own conditional update. If one of
those loses a race, the members already written are put back and the call
fails with AssetConflictError.
"""

from datetime import datetime
from typing import Iterable

from shared.logging import get_logger

from .clock import Clock, SystemClock
from .config import WorkflowConfig
from .errors import (
    AlreadyClosedError, AssetConflictError, ConcurrencyConflictError,
    CrossHospitalDeniedError, NotFoundError, ValidationError,
)
from .events import EventDispatcher, WorkflowAction, WorkflowEvent
from .models import (
    Asset, Request, AssetStatus, LifecycleStatus, UtilizationStatus,
    FinalStatus, RequestType, StepStatus, TerminalLevel, approval_step, with_step,
)
from .store import AssetLedger, RequestStore, CLEARED_RESERVATION

logger = get_logger(__name__)

FULFILLED_REMARK = "Assets fulfilled and transferred"


def normalize_asset_ids(asset_ids: Iterable[int]) -> list[int]:
    ids = list(asset_ids or [])
    if not ids:
        raise ValidationError("At least one asset must be specified")
    if len(set(ids)) != len(ids):
        raise ValidationError("Asset list contains duplicates", asset_ids=ids)
    return ids


def _reservation_snapshot(asset: Asset) -> dict:
    return {
        "is_reserved": asset.is_reserved,
        "reserved_request_id": asset.reserved_request_id,
        "reserved_by_department_id": asset.reserved_by_department_id,
        "reserved_at": asset.reserved_at,
    }


class ReservationCoordinator:
    """Reserves, releases and fulfills assets against requests."""

    def __init__(self, ledger: AssetLedger, requests: RequestStore,
                 config: WorkflowConfig | None = None, clock: Clock | None = None,
                 events: EventDispatcher | None = None):
        self.ledger = ledger
        self.requests = requests
        self.config = config or WorkflowConfig()
        self.clock = clock or SystemClock()
        self.events = events or EventDispatcher()

    # -------------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------------

    @staticmethod
    def check_hospital(request: Request, hospital_id: str) -> None:
        """Coordinator calls are confined to the request's hospital."""
        if hospital_id != request.hospital_id:
            logger.warning(
                f"Cross-hospital access denied on request {request.id}: "
                f"actor hospital {hospital_id}, request hospital {request.hospital_id}"
            )
            raise CrossHospitalDeniedError(
                "Request belongs to a different hospital",
                request_id=request.id,
            )

    def _load_open(self, request_id: int) -> Request:
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError("Request not found", request_id=request_id)
        if request.final_status != FinalStatus.PENDING.value or request.is_terminal:
            raise AlreadyClosedError(
                f"Request is already {request.final_status}", request_id=request_id
            )
        return request

    # -------------------------------------------------------------------------
    # reserve / release
    # -------------------------------------------------------------------------

    def reserve(self, request_id: int, department_id: str, asset_ids: Iterable[int]) -> list[Asset]:
        """Reserve every asset in ``asset_ids`` for a request, or none of them.

        Assets must belong to the request's hospital.
        """
        ids = normalize_asset_ids(asset_ids)
        request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError("Request not found", request_id=request_id)
        assets = self.ledger.get_many(ids)
        foreign = [a.id for a in assets if a.hospital_id != request.hospital_id]
        if foreign:
            logger.warning(
                f"Reservation for request {request_id} refused; assets {foreign} "
                f"belong to another hospital"
            )
            raise CrossHospitalDeniedError(
                "Assets belong to a different hospital",
                request_id=request_id, asset_ids=foreign,
            )
        available = [a for a in assets if a.is_reservable]
        if len(available) < len(ids):
            ok = {a.id for a in available}
            unavailable = [i for i in ids if i not in ok]
            logger.warning(f"Reservation for request {request_id} refused; unavailable assets {unavailable}")
            raise AssetConflictError(
                "Some assets are no longer available",
                requested=ids, unavailable=unavailable,
            )

        now = self.clock.now()
        applied: list[int] = []
        for asset in available:
            won = self.ledger.conditional_update(
                asset.id,
                expected={
                    "is_reserved": False,
                    "status": AssetStatus.ACTIVE.value,
                    "utilization_status": UtilizationStatus.NOT_IN_USE.value,
                },
                values={
                    "is_reserved": True,
                    "reserved_request_id": request_id,
                    "reserved_by_department_id": department_id,
                    "reserved_at": now,
                },
            )
            if not won:
                self._undo_reservations(request_id, applied)
                raise AssetConflictError(
                    f"Asset {asset.id} was claimed concurrently",
                    requested=ids, unavailable=[asset.id],
                )
            applied.append(asset.id)

        logger.info(f"Reserved assets {applied} for request {request_id} by department {department_id}")
        self.events.emit(WorkflowEvent(
            action=WorkflowAction.ASSETS_RESERVED,
            request_id=request_id,
            occurred_at=now,
            details={"asset_ids": applied, "department_id": department_id},
        ))
        return self.ledger.get_many(ids)

    def _undo_reservations(self, request_id: int, asset_ids: list[int]) -> None:
        for asset_id in asset_ids:
            self.ledger.conditional_update(
                asset_id, expected={"reserved_request_id": request_id}, values=CLEARED_RESERVATION
            )

    def release(self, request_id: int) -> int:
        """Clear every reservation held by a request. Safe to repeat."""
        released = self.ledger.clear_reservations(request_id)
        if released:
            logger.info(f"Released {released} asset(s) held by request {request_id}")
            self.events.emit(WorkflowEvent(
                action=WorkflowAction.ASSETS_RELEASED,
                request_id=request_id,
                occurred_at=self.clock.now(),
                details={"released": released},
            ))
        return released

    def settle(self, request: Request) -> int:
        """Bring assets in line with a request that just closed.

        A completed scrap request disposes of the assets it claimed. Any
        reservation still naming the request is then released.
        """
        if (request.request_type == RequestType.SCRAP.value
                and request.current_level == TerminalLevel.COMPLETED.value):
            scrapped = {
                "lifecycle_status": LifecycleStatus.SCRAPPED.value,
                "status": AssetStatus.DISPOSED.value,
                "utilization_status": UtilizationStatus.NOT_IN_USE.value,
            }
            for asset in self.ledger.reserved_for(request.id):
                self.ledger.conditional_update(
                    asset.id,
                    expected={"reserved_request_id": request.id},
                    values={**scrapped, **CLEARED_RESERVATION},
                )
            for record in request.fulfilled_assets or []:
                self.ledger.conditional_update(
                    record["asset_id"],
                    expected={"lifecycle_status": LifecycleStatus.ACTIVE.value},
                    values=scrapped,
                )
            logger.info(f"Scrap request {request.id} completed; claimed assets disposed")
        return self.release(request.id)

    # -------------------------------------------------------------------------
    # fulfill / reject_assets
    # -------------------------------------------------------------------------

    def _completion_values(self, request: Request, actor_id: str | None, now: datetime,
                           remarks: str) -> dict:
        values = {
            "current_level": TerminalLevel.COMPLETED.value,
            "final_status": FinalStatus.APPROVED.value,
        }
        if not request.is_terminal:
            values["approval_flow"] = with_step(
                request.approval_flow, request.current_level,
                approval_step(StepStatus.APPROVED, actor_id, now, remarks),
            )
        return values

    def _restore(self, moved: list[tuple[int, dict, dict]]) -> None:
        for asset_id, written, prior in reversed(moved):
            self.ledger.conditional_update(asset_id, expected=written, values=prior)

    def fulfill(self, request_id: int, asset_ids: Iterable[int], actor_id: str | None) -> Request:
        """Bind reserved assets to a request and move them to its department.

        Completes the request once ``fulfilled_count`` reaches the requested
        total.
        """
        ids = normalize_asset_ids(asset_ids)

        for _ in range(self.config.max_retries):
            request = self._load_open(request_id)
            assets = self.ledger.get_many(ids)
            eligible = [
                a for a in assets
                if a.is_reserved
                and a.reserved_request_id == request.id
                and a.hospital_id == request.hospital_id
                and a.status == AssetStatus.ACTIVE.value
                and a.lifecycle_status == LifecycleStatus.ACTIVE.value
            ]
            if len(eligible) < len(ids):
                ok = {a.id for a in eligible}
                raise AssetConflictError(
                    "Some assets are not reserved for this request or are not active",
                    requested=ids, unavailable=[i for i in ids if i not in ok],
                )

            now = self.clock.now()
            moved: list[tuple[int, dict, dict]] = []
            records = []
            for asset in eligible:
                prior = {
                    "current_department_id": asset.current_department_id,
                    "utilization_status": asset.utilization_status,
                    **_reservation_snapshot(asset),
                }
                written = {
                    "current_department_id": request.department_id,
                    "utilization_status": UtilizationStatus.IN_USE.value,
                    **CLEARED_RESERVATION,
                }
                won = self.ledger.conditional_update(
                    asset.id,
                    expected={
                        "is_reserved": True,
                        "reserved_request_id": request.id,
                        "status": AssetStatus.ACTIVE.value,
                        "lifecycle_status": LifecycleStatus.ACTIVE.value,
                    },
                    values=written,
                )
                if not won:
                    self._restore(moved)
                    raise AssetConflictError(
                        f"Asset {asset.id} changed while fulfilling",
                        requested=ids, unavailable=[asset.id],
                    )
                moved.append((asset.id, written, prior))
                records.append({
                    "asset_id": asset.id,
                    "from_department_id": asset.current_department_id,
                    "fulfilled_by": actor_id,
                    "fulfilled_at": now.isoformat(),
                })

            fulfilled_count = request.fulfilled_count + len(records)
            values = {
                "fulfilled_assets": list(request.fulfilled_assets or []) + records,
                "fulfilled_count": fulfilled_count,
                "last_action_at": now,
            }
            completes = fulfilled_count >= request.total_requested
            if completes:
                values.update(self._completion_values(request, actor_id, now, FULFILLED_REMARK))

            from_level = request.current_level
            if self.requests.conditional_update(request.id, from_level, values, request.version):
                request = self.requests.get(request.id)
                logger.info(
                    f"Fulfilled request {request.id} with assets {ids} "
                    f"({fulfilled_count}/{request.total_requested})"
                )
                self.events.emit(WorkflowEvent(
                    action=WorkflowAction.ASSETS_FULFILLED,
                    request_id=request.id,
                    occurred_at=now,
                    actor_id=actor_id,
                    organization_id=request.organization_id,
                    hospital_id=request.hospital_id,
                    details={"asset_ids": ids, "fulfilled_count": fulfilled_count},
                ))
                if completes:
                    self._announce_completion(request, from_level, actor_id, now)
                return request

            # Lost the race on the request row; put the assets back and start over
            self._restore(moved)

        raise ConcurrencyConflictError(
            "Request kept changing while fulfilling; retry", request_id=request_id
        )

    def reject_assets(self, request_id: int, asset_ids: Iterable[int], remarks: str,
                      actor_id: str | None) -> Request:
        """Turn down offered assets on a count-mode request and release them."""
        ids = normalize_asset_ids(asset_ids)

        for _ in range(self.config.max_retries):
            request = self._load_open(request_id)
            if not request.is_count_mode:
                raise ValidationError(
                    "Assets can only be rejected from count-based requests",
                    request_id=request_id,
                )
            assets = self.ledger.get_many(ids)
            held = [a for a in assets if a.is_reserved and a.reserved_request_id == request.id]
            if len(held) < len(ids):
                ok = {a.id for a in held}
                raise AssetConflictError(
                    "Some assets are not reserved for this request",
                    requested=ids, unavailable=[i for i in ids if i not in ok],
                )

            now = self.clock.now()
            moved: list[tuple[int, dict, dict]] = []
            records = []
            for asset in held:
                # Department is read before the release clears the claim
                from_department = asset.current_department_id
                prior = _reservation_snapshot(asset)
                won = self.ledger.conditional_update(
                    asset.id,
                    expected={"is_reserved": True, "reserved_request_id": request.id},
                    values=CLEARED_RESERVATION,
                )
                if not won:
                    self._restore(moved)
                    raise AssetConflictError(
                        f"Asset {asset.id} changed while rejecting",
                        requested=ids, unavailable=[asset.id],
                    )
                moved.append((asset.id, dict(CLEARED_RESERVATION), prior))
                records.append({
                    "asset_id": asset.id,
                    "from_department_id": from_department,
                    "rejected_by": actor_id,
                    "rejected_at": now.isoformat(),
                    "remarks": remarks or "",
                })

            values = {
                "rejected_assets": list(request.rejected_assets or []) + records,
                "last_action_at": now,
            }
            completes = request.fulfilled_count >= request.total_requested
            if completes:
                values.update(self._completion_values(request, actor_id, now, FULFILLED_REMARK))

            from_level = request.current_level
            if self.requests.conditional_update(request.id, from_level, values, request.version):
                request = self.requests.get(request.id)
                logger.info(f"Rejected assets {ids} from request {request.id}")
                self.events.emit(WorkflowEvent(
                    action=WorkflowAction.ASSETS_REJECTED,
                    request_id=request.id,
                    occurred_at=now,
                    actor_id=actor_id,
                    organization_id=request.organization_id,
                    hospital_id=request.hospital_id,
                    details={"asset_ids": ids, "remarks": remarks or ""},
                ))
                if completes:
                    self._announce_completion(request, from_level, actor_id, now)
                return request

            self._restore(moved)

        raise ConcurrencyConflictError(
            "Request kept changing while rejecting assets; retry", request_id=request_id
        )

    def _announce_completion(self, request: Request, from_level: str, actor_id: str | None,
                             now: datetime) -> None:
        self.settle(request)
        logger.info(f"Request {request.id} completed")
        self.events.emit(WorkflowEvent(
            action=WorkflowAction.REQUEST_COMPLETED,
            request_id=request.id,
            occurred_at=now,
            actor_id=actor_id,
            from_level=from_level,
            to_level=request.current_level,
            organization_id=request.organization_id,
            hospital_id=request.hospital_id,
        ))
