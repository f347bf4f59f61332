"""SQLAlchemy implementations of the monitor, result and incident stores.

Each operation opens its own short session from the session factory, so no
session is held across the engine's suspension points.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upwatch.exceptions import QuotaExceededError
from upwatch.server.core.types import (
    UNRESOLVED_INCIDENT_STATUSES,
    AlertRecipientRecord,
    IncidentRecord,
    MonitorSnapshot,
    MonitorStatus,
    ProbeOutcome,
)
from upwatch.server.models import AlertRecipient, Incident, Monitor, MonitorLog, MonitorResult, User

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def parse_id(value: str | uuid.UUID) -> uuid.UUID | None:
    """Parse an id, returning None for malformed input."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def monitor_snapshot(monitor: Monitor) -> MonitorSnapshot:
    return MonitorSnapshot(
        id=str(monitor.id),
        user_id=str(monitor.user_id),
        url=monitor.url,
        method=monitor.method,
        expected_status=monitor.expected_status,
        interval_minutes=monitor.interval_minutes,
        timeout_seconds=monitor.timeout_seconds,
        regions=tuple(monitor.regions or ()),
        is_paused=monitor.is_paused,
        is_deleted=monitor.is_deleted,
        status=monitor.status,  # type: ignore[arg-type]
        last_checked_at=monitor.last_checked_at,
        name=monitor.website_name,
    )


def incident_record(incident: Incident) -> IncidentRecord:
    return IncidentRecord(
        id=str(incident.id),
        monitor_id=str(incident.monitor_id),
        opened_at=incident.opened_at,
        status=incident.status,  # type: ignore[arg-type]
        summary=incident.summary,
        resolved_at=incident.resolved_at,
        last_notified_at=incident.last_notified_at,
    )


def recipient_record(recipient: AlertRecipient) -> AlertRecipientRecord:
    return AlertRecipientRecord(
        id=str(recipient.id), monitor_id=str(recipient.monitor_id), email=recipient.email
    )


def _active_monitor_count(user_id: uuid.UUID):
    return (
        select(func.count())
        .select_from(Monitor)
        .where(Monitor.user_id == user_id, Monitor.is_deleted.is_(False))
    )


def _recipient_count(user_id: uuid.UUID):
    return (
        select(func.count())
        .select_from(AlertRecipient)
        .join(Monitor, AlertRecipient.monitor_id == Monitor.id)
        .where(Monitor.user_id == user_id, Monitor.is_deleted.is_(False))
    )


async def _lock_user(session: AsyncSession, user_id: uuid.UUID) -> None:
    """Lock the user row for the rest of the transaction (no-op on SQLite)."""
    await session.execute(select(User.id).where(User.id == user_id).with_for_update())


class SqlMonitorStore:
    """Monitor store over SQLAlchemy."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def list_active_monitors(self) -> list[MonitorSnapshot]:
        async with self._session_factory() as session:
            stmt = select(Monitor).where(
                Monitor.is_paused.is_(False), Monitor.is_deleted.is_(False)
            )
            result = await session.execute(stmt)
            return [monitor_snapshot(m) for m in result.scalars().all()]

    async def get_monitor(self, monitor_id: str) -> MonitorSnapshot | None:
        key = parse_id(monitor_id)
        if key is None:
            return None
        async with self._session_factory() as session:
            monitor = await session.get(Monitor, key)
            return monitor_snapshot(monitor) if monitor else None

    async def update_status(
        self, monitor_id: str, status: MonitorStatus, last_checked_at: datetime
    ) -> bool:
        key = parse_id(monitor_id)
        if key is None:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                update(Monitor)
                .where(
                    Monitor.id == key,
                    Monitor.is_paused.is_(False),
                    Monitor.is_deleted.is_(False),
                )
                .values(status=status, last_checked_at=last_checked_at)
            )
            await session.commit()
            return result.rowcount > 0

    async def count_active_by_user(self, user_id: str) -> int:
        key = parse_id(user_id)
        if key is None:
            return 0
        async with self._session_factory() as session:
            return (await session.execute(_active_monitor_count(key))).scalar_one()

    async def count_recipients_by_user(self, user_id: str) -> int:
        key = parse_id(user_id)
        if key is None:
            return 0
        async with self._session_factory() as session:
            return (await session.execute(_recipient_count(key))).scalar_one()

    async def list_recipients(self, monitor_id: str) -> list[AlertRecipientRecord]:
        key = parse_id(monitor_id)
        if key is None:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(AlertRecipient)
                .where(AlertRecipient.monitor_id == key)
                .order_by(AlertRecipient.created_at)
            )
            return [recipient_record(r) for r in result.scalars().all()]

    async def get_user_plan(self, user_id: str) -> str | None:
        key = parse_id(user_id)
        if key is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(select(User.plan).where(User.id == key))
            return result.scalar_one_or_none()

    async def create_monitor(self, values: dict[str, Any], *, limit: int) -> MonitorSnapshot:
        user_id = parse_id(values["user_id"])
        if user_id is None:
            raise ValueError(f"Invalid user id: {values['user_id']}")

        async with self._session_factory() as session:
            async with session.begin():
                await _lock_user(session, user_id)
                if limit >= 0:
                    current = (await session.execute(_active_monitor_count(user_id))).scalar_one()
                    if current >= limit:
                        raise QuotaExceededError("monitors", limit=limit, current=current)

                monitor = Monitor(
                    user_id=user_id,
                    website_name=values.get("name"),
                    url=values["url"],
                    method=values.get("method", "GET").upper(),
                    expected_status=values.get("expected_status", 200),
                    interval_minutes=values.get("interval_minutes", 5.0),
                    timeout_seconds=values.get("timeout_seconds", 30.0),
                    regions=list(values.get("regions", [])),
                    is_paused=False,
                    is_deleted=False,
                    status="UP",
                )
                session.add(monitor)
                await session.flush()
                snapshot = monitor_snapshot(monitor)

        logger.info(f"Created monitor {snapshot.id} for user {snapshot.user_id}")
        return snapshot

    async def create_recipient(
        self, user_id: str, monitor_id: str, email: str, *, limit: int
    ) -> AlertRecipientRecord:
        user_key = parse_id(user_id)
        monitor_key = parse_id(monitor_id)
        if user_key is None or monitor_key is None:
            raise ValueError("Invalid user or monitor id")

        async with self._session_factory() as session:
            async with session.begin():
                await _lock_user(session, user_key)
                if limit >= 0:
                    current = (await session.execute(_recipient_count(user_key))).scalar_one()
                    if current >= limit:
                        raise QuotaExceededError("alertRecipients", limit=limit, current=current)

                recipient = AlertRecipient(monitor_id=monitor_key, email=email)
                session.add(recipient)
                await session.flush()
                record = recipient_record(recipient)

        return record

    async def set_paused(self, monitor_id: str, paused: bool) -> MonitorSnapshot | None:
        """Pause or resume a monitor.

        Paused monitors report status PAUSED. A resumed monitor with an
        unresolved incident goes back to DOWN so that recovery resolves it.
        """
        key = parse_id(monitor_id)
        if key is None:
            return None
        async with self._session_factory() as session:
            monitor = await session.get(Monitor, key)
            if monitor is None or monitor.is_deleted:
                return None
            monitor.is_paused = paused
            if paused:
                monitor.status = "PAUSED"
            else:
                unresolved = await session.execute(
                    select(func.count())
                    .select_from(Incident)
                    .where(
                        Incident.monitor_id == key,
                        Incident.status.in_(UNRESOLVED_INCIDENT_STATUSES),
                    )
                )
                monitor.status = "DOWN" if unresolved.scalar_one() else "UP"
            await session.commit()
            return monitor_snapshot(monitor)

    async def soft_delete(self, monitor_id: str) -> MonitorSnapshot | None:
        key = parse_id(monitor_id)
        if key is None:
            return None
        async with self._session_factory() as session:
            monitor = await session.get(Monitor, key)
            if monitor is None or monitor.is_deleted:
                return None
            monitor.is_deleted = True
            await session.commit()
            return monitor_snapshot(monitor)


class SqlResultStore:
    """Result and monitor log store over SQLAlchemy."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def append_result(self, outcome: ProbeOutcome) -> None:
        key = parse_id(outcome.monitor_id)
        if key is None:
            return
        async with self._session_factory() as session:
            session.add(
                MonitorResult(
                    monitor_id=key,
                    region=outcome.region,
                    checked_at=outcome.checked_at,
                    is_up=outcome.is_up,
                    status_code=outcome.status_code,
                    response_time_ms=outcome.response_time_ms,
                    error_message=outcome.error_message,
                )
            )
            await session.commit()

    async def append_log(
        self,
        monitor_id: str,
        region: str,
        level: str,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        key = parse_id(monitor_id)
        if key is None:
            return
        async with self._session_factory() as session:
            session.add(
                MonitorLog(monitor_id=key, region=region, level=level, message=message, meta=meta)
            )
            await session.commit()

    async def list_results(self, monitor_id: str, limit: int = 100) -> list[MonitorResult]:
        """Most recent results first."""
        key = parse_id(monitor_id)
        if key is None:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(MonitorResult)
                .where(MonitorResult.monitor_id == key)
                .order_by(MonitorResult.checked_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_logs(self, monitor_id: str, limit: int = 100) -> list[MonitorLog]:
        key = parse_id(monitor_id)
        if key is None:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(MonitorLog)
                .where(MonitorLog.monitor_id == key)
                .order_by(MonitorLog.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


class SqlIncidentStore:
    """Incident store over SQLAlchemy."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def find_open_incident(self, monitor_id: str) -> IncidentRecord | None:
        key = parse_id(monitor_id)
        if key is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(
                select(Incident)
                .where(
                    Incident.monitor_id == key,
                    Incident.status.in_(UNRESOLVED_INCIDENT_STATUSES),
                )
                .order_by(Incident.opened_at.desc())
                .limit(1)
            )
            incident = result.scalar_one_or_none()
            return incident_record(incident) if incident else None

    async def get_incident(self, incident_id: str) -> IncidentRecord | None:
        key = parse_id(incident_id)
        if key is None:
            return None
        async with self._session_factory() as session:
            incident = await session.get(Incident, key)
            return incident_record(incident) if incident else None

    async def create_incident(
        self,
        monitor_id: str,
        opened_at: datetime,
        summary: str | None,
        last_notified_at: datetime | None = None,
    ) -> IncidentRecord:
        key = parse_id(monitor_id)
        if key is None:
            raise ValueError(f"Invalid monitor id: {monitor_id}")
        async with self._session_factory() as session:
            incident = Incident(
                monitor_id=key,
                opened_at=opened_at,
                status="OPEN",
                summary=summary,
                last_notified_at=last_notified_at,
            )
            session.add(incident)
            await session.commit()
            return incident_record(incident)

    async def update_incident(self, incident: IncidentRecord) -> None:
        key = parse_id(incident.id)
        if key is None:
            raise ValueError(f"Invalid incident id: {incident.id}")
        async with self._session_factory() as session:
            await session.execute(
                update(Incident)
                .where(Incident.id == key)
                .values(
                    status=incident.status,
                    summary=incident.summary,
                    resolved_at=incident.resolved_at,
                    last_notified_at=incident.last_notified_at,
                )
            )
            await session.commit()

    async def list_incidents(self, monitor_id: str, limit: int = 50) -> list[IncidentRecord]:
        """Most recent incidents first."""
        key = parse_id(monitor_id)
        if key is None:
            return []
        async with self._session_factory() as session:
            result = await session.execute(
                select(Incident)
                .where(Incident.monitor_id == key)
                .order_by(Incident.opened_at.desc())
                .limit(limit)
            )
            return [incident_record(i) for i in result.scalars().all()]
