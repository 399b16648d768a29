"""Pydantic schemas for the asset workflow API requests and responses."""

from datetime import datetime
from pydantic import BaseModel, Field
from .models import (
    Priority, RequestType, ScopeLevel, Stage, StepStatus, UtilizationStatus
)


# ============================================================
# Actor
# ============================================================

class Actor(BaseModel):
    """Who is calling, as resolved by the authentication layer."""
    actor_id: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)
    hospital_id: str = Field(..., min_length=1)
    department_id: str = Field(..., min_length=1)

    model_config = {"frozen": True}


# ============================================================
# Request Schemas
# ============================================================

class ScopeIn(BaseModel):
    """Organizational boundary of a new request.

    Fields are optional here so that a missing one surfaces as a workflow
    validation error rather than a schema error.
    """
    level: ScopeLevel = ScopeLevel.DEPARTMENT
    department_id: str | None = None
    hospital_id: str | None = None
    organization_id: str | None = None


class RequestCreate(BaseModel):
    """Schema for creating a request.

    Exactly one of ``requested_asset_ids`` or ``requested_count`` must be given.
    """
    request_type: RequestType
    scope: ScopeIn
    requested_asset_ids: list[int] | None = None
    requested_count: int | None = None
    asset_category: str | None = Field(None, max_length=100)
    asset_name: str | None = Field(None, max_length=255)
    justification: str = Field(..., min_length=1)
    priority: Priority = Priority.MEDIUM
    estimated_cost: float = Field(0, ge=0)
    escalation_enabled: bool = True
    escalate_after_hours: float | None = Field(None, gt=0)


class Decision(BaseModel):
    """Body for approve/reject."""
    remarks: str = ""


class AssetSelection(BaseModel):
    """Body for reserve/fulfill/reject-assets."""
    asset_ids: list[int] = Field(..., min_length=1)
    remarks: str = ""


class UtilizationUpdate(BaseModel):
    utilization_status: UtilizationStatus


class ApprovalStep(BaseModel):
    status: StepStatus = StepStatus.PENDING
    approved_by: str | None = None
    date: datetime | None = None
    remarks: str = ""


class FulfilledAsset(BaseModel):
    asset_id: int
    from_department_id: str | None
    fulfilled_by: str | None
    fulfilled_at: datetime


class RejectedAsset(BaseModel):
    asset_id: int
    from_department_id: str | None
    rejected_by: str | None
    rejected_at: datetime
    remarks: str = ""


class RequestResponse(BaseModel):
    """Schema for request response, with the full approval history."""
    id: int
    request_type: RequestType
    requested_by: str
    asset_category: str | None
    asset_name: str | None
    justification: str
    priority: Priority
    estimated_cost: float
    requested_asset_ids: list[int] = []
    requested_count: int | None
    fulfilled_count: int
    fulfilled_assets: list[FulfilledAsset] = []
    rejected_assets: list[RejectedAsset] = []
    approval_flow: dict[Stage, ApprovalStep] = {}
    current_level: str
    final_status: str
    scope_level: ScopeLevel
    department_id: str
    hospital_id: str
    organization_id: str
    escalation_enabled: bool
    escalate_after_hours: float
    last_action_at: datetime
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ============================================================
# Asset Schemas
# ============================================================

class AssetResponse(BaseModel):
    id: int
    asset_code: str
    asset_name: str
    category: str | None
    hospital_id: str
    current_department_id: str
    status: str
    lifecycle_status: str
    utilization_status: str
    is_reserved: bool
    reserved_request_id: int | None
    reserved_by_department_id: str | None
    reserved_at: datetime | None

    model_config = {"from_attributes": True}
