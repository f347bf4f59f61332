"""Domain types shared by the prober, scheduler and incident engine.

These are plain dataclasses detached from the ORM so that the engine never
holds database sessions across suspension points.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

MonitorStatus = Literal["UP", "DOWN", "PAUSED"]
IncidentStatus = Literal["OPEN", "ACKNOWLEDGED", "RESOLVED"]
ResourceType = Literal["monitors", "alertRecipients"]
NotificationEvent = Literal["opened", "renotify", "resolved"]

# Classified reasons for a failed probe
ProbeError = Literal["timeout", "dns_failure", "connection_refused", "tls_error", "other"]
PROBER_INTERNAL_ERROR = "prober_internal_error"

UNRESOLVED_INCIDENT_STATUSES: frozenset[str] = frozenset({"OPEN", "ACKNOWLEDGED"})


@dataclass(frozen=True)
class ProbeTarget:
    """What a single probe requests and how it judges the response."""

    url: str
    method: str = "GET"
    expected_status: int = 200
    timeout_seconds: float = 30.0
    follow_redirects: bool = True


@dataclass(frozen=True)
class ProbeOutcome:
    """Result of one check of one monitor from one region."""

    monitor_id: str
    region: str
    checked_at: datetime
    is_up: bool
    status_code: int | None = None
    response_time_ms: int = 0
    error_message: str | None = None


@dataclass(frozen=True)
class MonitorSnapshot:
    """Point-in-time copy of a monitor row as the engine sees it."""

    id: str
    user_id: str
    url: str
    method: str = "GET"
    expected_status: int = 200
    interval_minutes: float = 5.0
    timeout_seconds: float = 30.0
    regions: tuple[str, ...] = ()
    is_paused: bool = False
    is_deleted: bool = False
    status: MonitorStatus = "UP"
    last_checked_at: datetime | None = None
    name: str | None = None

    @property
    def schedulable(self) -> bool:
        """Paused or deleted monitors are never enqueued."""
        return not (self.is_paused or self.is_deleted) and bool(self.regions)

    def to_target(self) -> ProbeTarget:
        return ProbeTarget(
            url=self.url,
            method=self.method,
            expected_status=self.expected_status,
            timeout_seconds=self.timeout_seconds,
        )


@dataclass
class IncidentRecord:
    """An incident as stored; mutated only by the incident engine."""

    id: str
    monitor_id: str
    opened_at: datetime
    status: IncidentStatus = "OPEN"
    summary: str | None = None
    resolved_at: datetime | None = None
    last_notified_at: datetime | None = None

    @property
    def is_unresolved(self) -> bool:
        return self.status in UNRESOLVED_INCIDENT_STATUSES


@dataclass(frozen=True)
class AlertRecipientRecord:
    id: str
    monitor_id: str
    email: str


@dataclass(frozen=True)
class CheckCycle:
    """One dispatch of a monitor to its regions within a single tick."""

    number: int
    regions: tuple[str, ...]


@dataclass(frozen=True)
class ProbeJob:
    """Unit of work queued on a region worker pool."""

    monitor_id: str
    region: str
    target: ProbeTarget
    cycle: CheckCycle | None = None
    scheduled_at: datetime | None = None
