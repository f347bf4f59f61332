"""Incident model."""

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from upwatch.server.models.base import BaseModel, UTCDateTime


class Incident(BaseModel):
    """Period during which a monitor was confirmed down.

    Incidents are never deleted. At most one per monitor is unresolved,
    enforced by a partial unique index where the database supports it.
    """

    __tablename__ = "incidents"
    __table_args__ = (
        Index(
            "uq_incidents_one_unresolved",
            "monitor_id",
            unique=True,
            sqlite_where=text("status != 'RESOLVED'"),
            postgresql_where=text("status != 'RESOLVED'"),
        ),
    )

    monitor_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("monitors.id", ondelete="CASCADE"),
        nullable=False,
    )
    opened_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="OPEN")
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_notified_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    def __repr__(self) -> str:
        return f"<Incident(id={self.id}, monitor_id={self.monitor_id}, status={self.status})>"
