"""Pydantic schemas for plan, usage and quota endpoints."""

from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class PlanResponse(BaseModel):
    """Schema for one plan of the catalog."""

    key: str = Field(..., description="Plan identifier (BASIC, PREMIUM, ...)")
    name: str = Field(..., description="Display name")
    monitors: int = Field(..., description="Monitor limit, -1 for unlimited")
    alert_recipients: int = Field(..., description="Alert recipient limit, -1 for unlimited")
    min_check_interval: float = Field(..., description="Minimum check interval in minutes")
    data_retention_days: int = Field(..., description="Result retention in days")
    allowed_regions: list[str] = Field(..., description="Regions monitors may use")


class PlanCatalogResponse(BaseModel):
    default_plan: str
    plans: list[PlanResponse]


class UsageItem(BaseModel):
    used: int = Field(..., description="Current non-deleted resources")
    limit: int = Field(..., description="Plan limit, -1 for unlimited")


class UsageResponse(BaseModel):
    """Schema for a user's usage against their plan."""

    user_id: UUID
    plan: str
    monitors: UsageItem
    alert_recipients: UsageItem
    min_check_interval: float
    data_retention_days: int
    allowed_regions: list[str]


class QuotaCheckRequest(BaseModel):
    """Schema for a quota check."""

    user_id: UUID = Field(..., description="User to check")
    resource_type: Literal["monitors", "alertRecipients"] = Field(
        ..., description="Resource the user wants to create", examples=["monitors"]
    )


class QuotaDecisionResponse(BaseModel):
    """Schema for a quota decision."""

    allowed: bool
    resource_type: str
    limit: Optional[int] = Field(None, description="Plan limit, -1 for unlimited")
    current: Optional[int] = Field(None, description="Current usage")
    reason: Optional[str] = Field(None, description="Why the request was denied")
