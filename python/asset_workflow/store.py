"""Asset Ledger and Request Store.

Both wrap a SQLAlchemy session and expose the compare-and-swap primitives the
engine is built on. A conditional update is a single ``UPDATE ... WHERE``
whose WHERE clause carries the expected prior state; a rowcount of 1 means
the caller won, 0 means somebody else changed the row first.

Reads that feed a write use ``populate_existing`` so an object already in the
identity map is refreshed with what the last conditional update wrote.
"""

from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from shared.logging import get_logger

from .models import Asset, Request, FinalStatus, RequestType, UtilizationStatus, AssetStatus

logger = get_logger(__name__)

# Reservation columns cleared by a release
CLEARED_RESERVATION = {
    "is_reserved": False,
    "reserved_request_id": None,
    "reserved_by_department_id": None,
    "reserved_at": None,
}


class AssetLedger:
    """Durable asset state."""

    def __init__(self, db: Session):
        self.db = db

    def add(self, asset: Asset) -> Asset:
        self.db.add(asset)
        self.db.flush()
        return asset

    def get(self, asset_id: int) -> Asset | None:
        return self.db.get(Asset, asset_id, populate_existing=True)

    def get_many(self, asset_ids: Iterable[int]) -> list[Asset]:
        ids = list(asset_ids)
        if not ids:
            return []
        stmt = (
            select(Asset)
            .where(Asset.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def reserved_for(self, request_id: int) -> list[Asset]:
        """Assets whose reservation names ``request_id``."""
        stmt = (
            select(Asset)
            .where(Asset.reserved_request_id == request_id)
            .order_by(Asset.id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def available_in_department(self, department_id: str, hospital_id: str | None = None) -> list[Asset]:
        """Reservable assets currently held by a department, optionally within one hospital."""
        conditions = [
            Asset.current_department_id == department_id,
            Asset.status == AssetStatus.ACTIVE.value,
            Asset.utilization_status == UtilizationStatus.NOT_IN_USE.value,
            Asset.is_reserved.is_(False),
        ]
        if hospital_id is not None:
            conditions.append(Asset.hospital_id == hospital_id)
        stmt = (
            select(Asset)
            .where(*conditions)
            .order_by(Asset.asset_code)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def conditional_update(self, asset_id: int, expected: dict[str, Any],
                           values: dict[str, Any]) -> bool:
        """Apply ``values`` only if every column in ``expected`` still matches.

        Returns True when the row was updated.
        """
        conditions = [Asset.id == asset_id]
        for column, value in expected.items():
            attr = getattr(Asset, column)
            conditions.append(attr.is_(None) if value is None else attr == value)
        stmt = (
            update(Asset)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def clear_reservations(self, request_id: int) -> int:
        """Release every asset reserved for a request. Returns the count."""
        stmt = (
            update(Asset)
            .where(Asset.reserved_request_id == request_id)
            .values(**CLEARED_RESERVATION)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount


class RequestStore:
    """Durable request state."""

    def __init__(self, db: Session):
        self.db = db

    def add(self, request: Request) -> Request:
        self.db.add(request)
        self.db.flush()
        return request

    def get(self, request_id: int) -> Request | None:
        return self.db.get(Request, request_id, populate_existing=True)

    def conditional_update(self, request_id: int, expected_level: str,
                           values: dict[str, Any], expected_version: int | None = None) -> bool:
        """Apply ``values`` only if the request is still at ``expected_level``.

        When ``expected_version`` is given the row must also still carry that
        version, which catches writes that leave the level unchanged (a
        transfer approval, a partial fulfillment). Every successful write
        bumps the version.
        """
        conditions = [Request.id == request_id, Request.current_level == expected_level]
        if expected_version is not None:
            conditions.append(Request.version == expected_version)
        stmt = (
            update(Request)
            .where(*conditions)
            .values(version=Request.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        won = self.db.execute(stmt).rowcount == 1
        if not won:
            logger.debug(
                f"Conditional update lost on request {request_id} "
                f"(expected level={expected_level}, version={expected_version})"
            )
        return won

    def escalation_candidates(self, stages: Iterable[str]) -> list[Request]:
        """Pending, escalation-enabled requests sitting at one of ``stages``.

        Asset transfers have a single approval gate and are never escalated.
        """
        stmt = (
            select(Request)
            .where(
                Request.final_status == FinalStatus.PENDING.value,
                Request.escalation_enabled.is_(True),
                Request.request_type != RequestType.ASSET_TRANSFER.value,
                Request.current_level.in_(list(stages)),
            )
            .order_by(Request.last_action_at, Request.id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def pending_at(self, stage: str, organization_id: str) -> list[Request]:
        stmt = (
            select(Request)
            .where(
                Request.current_level == stage,
                Request.final_status == FinalStatus.PENDING.value,
                Request.organization_id == organization_id,
            )
            .order_by(Request.created_at, Request.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def raised_by(self, requested_by: str) -> list[Request]:
        stmt = (
            select(Request)
            .where(Request.requested_by == requested_by)
            .order_by(Request.created_at.desc(), Request.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def open_count_requests(self, hospital_id: str, exclude_department_id: str | None = None) -> list[Request]:
        """Pending count-mode requests in a hospital, oldest first."""
        conditions = [
            Request.hospital_id == hospital_id,
            Request.final_status == FinalStatus.PENDING.value,
            Request.requested_count.is_not(None),
        ]
        if exclude_department_id is not None:
            conditions.append(Request.department_id != exclude_department_id)
        stmt = select(Request).where(*conditions).order_by(Request.created_at, Request.id)
        return list(self.db.execute(stmt).scalars().all())
