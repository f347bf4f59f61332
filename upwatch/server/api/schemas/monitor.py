"""Pydantic schemas for monitor and incident endpoints."""

from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from upwatch.server.api.schemas.plans import QuotaDecisionResponse

HttpMethod = Literal["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class MonitorCreate(BaseModel):
    """Schema for creating a monitor."""

    user_id: UUID = Field(..., description="Owner of the monitor")
    name: Optional[str] = Field(None, max_length=255, description="Website name")
    url: str = Field(
        ...,
        min_length=1,
        max_length=2048,
        pattern=r"^https?://",
        description="URL to check",
        examples=["https://example.com/health"],
    )
    method: HttpMethod = Field("GET", description="HTTP method")
    expected_status: int = Field(200, ge=100, le=599, description="Status code counted as up")
    interval_minutes: float = Field(5.0, gt=0, description="Check interval in minutes")
    timeout_seconds: float = Field(30.0, gt=0, le=120, description="Request timeout in seconds")
    regions: list[str] = Field(
        ..., min_length=1, description="Regions to check from", examples=[["us-east-1"]]
    )


class MonitorResponse(BaseModel):
    """Schema for a monitor."""

    id: UUID
    user_id: UUID
    name: Optional[str] = None
    url: str
    method: str
    expected_status: int
    interval_minutes: float
    timeout_seconds: float
    regions: list[str]
    is_paused: bool
    is_deleted: bool
    status: str = Field(..., description="UP, DOWN or PAUSED")
    last_checked_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RecipientCreate(BaseModel):
    email: str = Field(
        ..., max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", examples=["ops@example.com"]
    )


class RecipientResponse(BaseModel):
    id: UUID
    monitor_id: UUID
    email: str

    model_config = ConfigDict(from_attributes=True)


class MonitorResultResponse(BaseModel):
    """Schema for one probe result."""

    id: UUID
    region: str
    checked_at: datetime
    is_up: bool
    status_code: Optional[int] = None
    response_time_ms: int
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class IncidentResponse(BaseModel):
    """Schema for an incident."""

    id: UUID
    monitor_id: UUID
    opened_at: datetime
    resolved_at: Optional[datetime] = None
    status: str = Field(..., description="OPEN, ACKNOWLEDGED or RESOLVED")
    summary: Optional[str] = None
    last_notified_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MonitorStatusResponse(BaseModel):
    """Schema for a monitor's current health."""

    monitor_id: UUID
    status: str
    is_paused: bool
    last_checked_at: Optional[datetime] = None
    open_incident: Optional[IncidentResponse] = None


class QuotaDeniedResponse(BaseModel):
    """Body of a 403 quota denial."""

    detail: QuotaDecisionResponse
