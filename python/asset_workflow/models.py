"""SQLAlchemy models for the asset workflow engine.

Two durable entities:
- ASSET: a physical asset, where it sits and whether an open request holds it
- REQUEST: a transfer/procurement/scrap request and its approval history

Departments, hospitals and organizations are owned by other services and are
referenced here by opaque string identifiers.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Integer, String, Text, DateTime, Boolean, Float, ForeignKey, JSON, Index
)
from sqlalchemy.orm import Mapped, mapped_column
from .database import Base


def utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


# Enums for constrained values
class AssetStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    DISPOSED = "disposed"


class LifecycleStatus(str, Enum):
    ACTIVE = "active"
    PENDING_SCRAP = "pending_scrap"
    SCRAPPED = "scrapped"


class UtilizationStatus(str, Enum):
    IN_USE = "in_use"
    NOT_IN_USE = "not_in_use"
    UNDER_MAINTENANCE = "under_maintenance"


class RequestType(str, Enum):
    ASSET_TRANSFER = "asset_transfer"
    PROCUREMENT = "procurement"
    SCRAP = "scrap"
    SCRAP_REVERSAL = "scrap_reversal"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Stage(str, Enum):
    """Approval stages, declared in their global order.

    A deployment picks an ordered subset of these as its chain.
    """
    LEVEL1 = "level1"
    LEVEL2 = "level2"
    LEVEL3 = "level3"
    HOD = "hod"
    INVENTORY = "inventory"
    PURCHASE = "purchase"
    BUDGET = "budget"
    CFO = "cfo"

    @property
    def rank(self) -> int:
        return list(Stage).index(self)


class TerminalLevel(str, Enum):
    """Markers that replace a stage name once a request is closed."""
    COMPLETED = "completed"
    REJECTED = "rejected"


TERMINAL_LEVELS = frozenset(level.value for level in TerminalLevel)


class StepStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


def approval_step(status: StepStatus, approved_by: str | None = None,
                  date: datetime | None = None, remarks: str = "") -> dict:
    """One approval-flow entry as stored in the ``approval_flow`` JSON column."""
    return {
        "status": status.value,
        "approved_by": approved_by,
        "date": date.isoformat() if date else None,
        "remarks": remarks or "",
    }


def with_step(flow: dict | None, stage: str, step: dict) -> dict:
    """Copy of ``flow`` with ``stage`` set to ``step``; rejects unknown stages."""
    key = Stage(stage).value
    updated = {Stage(k).value: dict(v) for k, v in (flow or {}).items()}
    updated[key] = step
    return updated


class FinalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ScopeLevel(str, Enum):
    DEPARTMENT = "department"
    HOSPITAL = "hospital"
    CROSS_HOSPITAL = "cross_hospital"


class Asset(Base):
    """A physical asset and its reservation state."""
    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    asset_code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    asset_name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100))
    hospital_id: Mapped[str] = mapped_column(String(64), nullable=False)
    current_department_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=AssetStatus.ACTIVE.value, nullable=False)
    lifecycle_status: Mapped[str] = mapped_column(
        String(20), default=LifecycleStatus.ACTIVE.value, nullable=False
    )
    utilization_status: Mapped[str] = mapped_column(
        String(20), default=UtilizationStatus.NOT_IN_USE.value, nullable=False
    )

    # Reservation; set and cleared only by the reservation coordinator
    is_reserved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reserved_request_id: Mapped[int | None] = mapped_column(ForeignKey("requests.id"), index=True)
    reserved_by_department_id: Mapped[str | None] = mapped_column(String(64))
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def is_reservable(self) -> bool:
        return (
            self.status == AssetStatus.ACTIVE.value
            and self.utilization_status == UtilizationStatus.NOT_IN_USE.value
            and not self.is_reserved
        )


class Request(Base):
    """A request moving through the approval chain."""
    __tablename__ = "requests"
    __table_args__ = (
        Index("ix_requests_sweep", "final_status", "escalation_enabled", "current_level"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_type: Mapped[str] = mapped_column(String(20), nullable=False)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_category: Mapped[str | None] = mapped_column(String(100))
    asset_name: Mapped[str | None] = mapped_column(String(255))
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(10), default=Priority.MEDIUM.value)
    estimated_cost: Mapped[float] = mapped_column(Float, default=0.0)

    # Exactly one fulfillment mode is populated
    requested_asset_ids: Mapped[list[int]] = mapped_column(JSON, default=list)
    requested_count: Mapped[int | None] = mapped_column(Integer)
    fulfilled_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fulfilled_assets: Mapped[list[dict]] = mapped_column(JSON, default=list)
    rejected_assets: Mapped[list[dict]] = mapped_column(JSON, default=list)

    # stage name -> {status, approved_by, date, remarks}
    approval_flow: Mapped[dict] = mapped_column(JSON, default=dict)
    current_level: Mapped[str] = mapped_column(String(20), nullable=False)
    final_status: Mapped[str] = mapped_column(String(10), default=FinalStatus.PENDING.value, nullable=False)

    # Scope; immutable after creation
    scope_level: Mapped[str] = mapped_column(String(20), default=ScopeLevel.DEPARTMENT.value)
    department_id: Mapped[str] = mapped_column(String(64), nullable=False)
    hospital_id: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    escalation_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    escalate_after_hours: Mapped[float] = mapped_column(Float, default=24.0, nullable=False)
    last_action_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    # Bumped by every conditional write
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    @property
    def is_count_mode(self) -> bool:
        return self.requested_count is not None

    @property
    def total_requested(self) -> int:
        if self.is_count_mode:
            return self.requested_count
        return len(self.requested_asset_ids or [])

    @property
    def is_terminal(self) -> bool:
        return self.current_level in TERMINAL_LEVELS
