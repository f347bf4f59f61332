"""Protocols for the stores the engine consumes.

The scheduler, incident engine and quota gate only talk to these
interfaces; ``upwatch.server.stores.sql`` implements them over SQLAlchemy.
"""

from datetime import datetime
from typing import Any, Protocol

from upwatch.server.core.types import (
    AlertRecipientRecord,
    IncidentRecord,
    MonitorSnapshot,
    MonitorStatus,
    ProbeOutcome,
)


class MonitorStore(Protocol):
    """Monitor configuration, status and per-user usage counts."""

    async def list_active_monitors(self) -> list[MonitorSnapshot]:
        """Return non-paused, non-deleted monitors."""
        ...

    async def get_monitor(self, monitor_id: str) -> MonitorSnapshot | None:
        """Return a monitor, including paused and soft-deleted ones."""
        ...

    async def update_status(
        self, monitor_id: str, status: MonitorStatus, last_checked_at: datetime
    ) -> bool:
        """Record the engine's verdict unless the monitor was paused or deleted meanwhile.

        Returns:
            Whether the monitor row was updated.
        """
        ...

    async def count_active_by_user(self, user_id: str) -> int:
        """Count the user's non-deleted monitors (paused ones included)."""
        ...

    async def count_recipients_by_user(self, user_id: str) -> int:
        """Count alert recipients across the user's non-deleted monitors."""
        ...

    async def list_recipients(self, monitor_id: str) -> list[AlertRecipientRecord]:
        ...

    async def get_user_plan(self, user_id: str) -> str | None:
        """Return the user's plan name, or None if the user does not exist."""
        ...

    async def create_monitor(self, values: dict[str, Any], *, limit: int) -> MonitorSnapshot:
        """Insert a monitor, re-checking the count against ``limit`` atomically.

        Raises:
            QuotaExceededError: The user already has ``limit`` monitors.
        """
        ...

    async def create_recipient(
        self, user_id: str, monitor_id: str, email: str, *, limit: int
    ) -> AlertRecipientRecord:
        """Insert an alert recipient, re-checking the count atomically.

        Raises:
            QuotaExceededError: The user already has ``limit`` recipients.
        """
        ...

    async def set_paused(self, monitor_id: str, paused: bool) -> MonitorSnapshot | None:
        ...

    async def soft_delete(self, monitor_id: str) -> MonitorSnapshot | None:
        ...


class ResultStore(Protocol):
    """Append-only probe results and per-monitor log entries."""

    async def append_result(self, outcome: ProbeOutcome) -> None:
        ...

    async def append_log(
        self,
        monitor_id: str,
        region: str,
        level: str,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        ...


class IncidentStore(Protocol):
    """Incident records. Incidents are never deleted."""

    async def find_open_incident(self, monitor_id: str) -> IncidentRecord | None:
        """Return the monitor's unresolved (OPEN or ACKNOWLEDGED) incident."""
        ...

    async def get_incident(self, incident_id: str) -> IncidentRecord | None:
        ...

    async def create_incident(
        self,
        monitor_id: str,
        opened_at: datetime,
        summary: str | None,
        last_notified_at: datetime | None = None,
    ) -> IncidentRecord:
        ...

    async def update_incident(self, incident: IncidentRecord) -> None:
        """Persist status, resolved_at, summary and last_notified_at."""
        ...

    async def list_incidents(self, monitor_id: str, limit: int = 50) -> list[IncidentRecord]:
        """Return the monitor's incidents, most recently opened first."""
        ...
