"""Monitor, alert recipient, probe result and monitor log models."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from upwatch.server.models.base import BaseModel, UTCDateTime


class Monitor(BaseModel):
    """A URL checked periodically from one or more regions."""

    __tablename__ = "monitors"

    user_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    website_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="GET")
    expected_status: Mapped[int] = mapped_column(Integer, nullable=False, default=200)
    interval_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=30.0)
    regions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="UP")
    last_checked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    # Relationships
    recipients: Mapped[list["AlertRecipient"]] = relationship(
        "AlertRecipient", back_populates="monitor", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Monitor(id={self.id}, url={self.url}, status={self.status}, "
            f"paused={self.is_paused}, deleted={self.is_deleted})>"
        )


class AlertRecipient(BaseModel):
    """Email address notified about a monitor's incidents."""

    __tablename__ = "alert_recipients"

    monitor_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("monitors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)

    monitor: Mapped["Monitor"] = relationship("Monitor", back_populates="recipients")

    def __repr__(self) -> str:
        return f"<AlertRecipient(id={self.id}, monitor_id={self.monitor_id}, email={self.email})>"


class MonitorResult(BaseModel):
    """One probe of one monitor from one region. Append-only."""

    __tablename__ = "monitor_results"
    __table_args__ = (Index("ix_monitor_results_monitor_checked", "monitor_id", "checked_at"),)

    monitor_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("monitors.id", ondelete="CASCADE"),
        nullable=False,
    )
    region: Mapped[str] = mapped_column(String(50), nullable=False)
    checked_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_up: Mapped[bool] = mapped_column(Boolean, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<MonitorResult(monitor_id={self.monitor_id}, region={self.region}, "
            f"up={self.is_up}, status={self.status_code})>"
        )


class MonitorLog(BaseModel):
    """Per-monitor event log entry (incident transitions, internal errors)."""

    __tablename__ = "monitor_logs"

    monitor_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("monitors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    region: Mapped[str] = mapped_column(String(50), nullable=False)
    level: Mapped[str] = mapped_column(String(10), nullable=False, default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    meta: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<MonitorLog(monitor_id={self.monitor_id}, level={self.level})>"
