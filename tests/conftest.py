"""Shared fixtures and in-memory store fakes."""

import os

# Must be set before upwatch.server.db.init builds the engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["SCHEDULER_ENABLED"] = "false"

import dataclasses
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from upwatch.exceptions import QuotaExceededError
from upwatch.server.core.plans import load_plan_catalog
from upwatch.server.core.types import (
    UNRESOLVED_INCIDENT_STATUSES,
    AlertRecipientRecord,
    IncidentRecord,
    MonitorSnapshot,
    MonitorStatus,
    ProbeOutcome,
)
from upwatch.server.models import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonitorStore:
    """In-memory MonitorStore."""

    def __init__(self) -> None:
        self.users: dict[str, str] = {}
        self.monitors: dict[str, MonitorSnapshot] = {}
        self.recipients: dict[str, list[AlertRecipientRecord]] = {}
        self.fail_list_active = False
        self.update_status_failures = 0

    def add_user(self, plan: str = "BASIC") -> str:
        user_id = str(uuid.uuid4())
        self.users[user_id] = plan
        return user_id

    def add_monitor(self, user_id: str | None = None, **fields: Any) -> MonitorSnapshot:
        fields.setdefault("url", "https://example.com")
        fields.setdefault("regions", ("us-east-1",))
        monitor = MonitorSnapshot(
            id=str(uuid.uuid4()), user_id=user_id or self.add_user(), **fields
        )
        self.monitors[monitor.id] = monitor
        return monitor

    def add_recipient(self, monitor_id: str, email: str) -> AlertRecipientRecord:
        record = AlertRecipientRecord(id=str(uuid.uuid4()), monitor_id=monitor_id, email=email)
        self.recipients.setdefault(monitor_id, []).append(record)
        return record

    def replace(self, monitor_id: str, **changes: Any) -> MonitorSnapshot:
        monitor = dataclasses.replace(self.monitors[monitor_id], **changes)
        self.monitors[monitor_id] = monitor
        return monitor

    async def list_active_monitors(self) -> list[MonitorSnapshot]:
        if self.fail_list_active:
            raise ConnectionError("database is down")
        return [m for m in self.monitors.values() if not (m.is_paused or m.is_deleted)]

    async def get_monitor(self, monitor_id: str) -> MonitorSnapshot | None:
        return self.monitors.get(monitor_id)

    async def update_status(
        self, monitor_id: str, status: MonitorStatus, last_checked_at: datetime
    ) -> bool:
        if self.update_status_failures:
            self.update_status_failures -= 1
            raise ConnectionError("database is down")
        monitor = self.monitors.get(monitor_id)
        if monitor is None or monitor.is_paused or monitor.is_deleted:
            return False
        self.replace(monitor_id, status=status, last_checked_at=last_checked_at)
        return True

    async def count_active_by_user(self, user_id: str) -> int:
        return sum(1 for m in self.monitors.values() if m.user_id == user_id and not m.is_deleted)

    async def count_recipients_by_user(self, user_id: str) -> int:
        return sum(
            len(self.recipients.get(m.id, []))
            for m in self.monitors.values()
            if m.user_id == user_id and not m.is_deleted
        )

    async def list_recipients(self, monitor_id: str) -> list[AlertRecipientRecord]:
        return list(self.recipients.get(monitor_id, []))

    async def get_user_plan(self, user_id: str) -> str | None:
        return self.users.get(user_id)

    async def create_monitor(self, values: dict[str, Any], *, limit: int) -> MonitorSnapshot:
        user_id = values["user_id"]
        current = await self.count_active_by_user(user_id)
        if limit >= 0 and current >= limit:
            raise QuotaExceededError("monitors", limit=limit, current=current)
        return self.add_monitor(
            user_id,
            url=values["url"],
            regions=tuple(values.get("regions", ("us-east-1",))),
            interval_minutes=values.get("interval_minutes", 5.0),
        )

    async def create_recipient(
        self, user_id: str, monitor_id: str, email: str, *, limit: int
    ) -> AlertRecipientRecord:
        current = await self.count_recipients_by_user(user_id)
        if limit >= 0 and current >= limit:
            raise QuotaExceededError("alertRecipients", limit=limit, current=current)
        return self.add_recipient(monitor_id, email)

    async def set_paused(self, monitor_id: str, paused: bool) -> MonitorSnapshot | None:
        if monitor_id not in self.monitors:
            return None
        return self.replace(monitor_id, is_paused=paused, status="PAUSED" if paused else "UP")

    async def soft_delete(self, monitor_id: str) -> MonitorSnapshot | None:
        if monitor_id not in self.monitors:
            return None
        return self.replace(monitor_id, is_deleted=True)


class FakeResultStore:
    """In-memory ResultStore; on_append runs after each stored outcome."""

    def __init__(self) -> None:
        self.results: list[ProbeOutcome] = []
        self.logs: list[dict[str, Any]] = []
        self.on_append: Callable[[ProbeOutcome], Awaitable[None]] | None = None

    async def append_result(self, outcome: ProbeOutcome) -> None:
        self.results.append(outcome)
        if self.on_append is not None:
            await self.on_append(outcome)

    async def append_log(
        self,
        monitor_id: str,
        region: str,
        level: str,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        self.logs.append(
            {"monitor_id": monitor_id, "region": region, "level": level, "message": message, "meta": meta}
        )


class FakeIncidentStore:
    """In-memory IncidentStore that refuses a second unresolved incident."""

    def __init__(self) -> None:
        self.incidents: dict[str, IncidentRecord] = {}
        self.fail_create = False
        self.update_failures = 0
        self.violations = 0

    def unresolved(self, monitor_id: str) -> list[IncidentRecord]:
        return [
            i
            for i in self.incidents.values()
            if i.monitor_id == monitor_id and i.status in UNRESOLVED_INCIDENT_STATUSES
        ]

    async def find_open_incident(self, monitor_id: str) -> IncidentRecord | None:
        found = self.unresolved(monitor_id)
        return dataclasses.replace(found[0]) if found else None

    async def get_incident(self, incident_id: str) -> IncidentRecord | None:
        incident = self.incidents.get(incident_id)
        return dataclasses.replace(incident) if incident else None

    async def create_incident(
        self,
        monitor_id: str,
        opened_at: datetime,
        summary: str | None,
        last_notified_at: datetime | None = None,
    ) -> IncidentRecord:
        if self.fail_create:
            raise ConnectionError("database is down")
        if self.unresolved(monitor_id):
            self.violations += 1
            raise AssertionError(f"second unresolved incident for {monitor_id}")
        incident = IncidentRecord(
            id=str(uuid.uuid4()),
            monitor_id=monitor_id,
            opened_at=opened_at,
            summary=summary,
            last_notified_at=last_notified_at,
        )
        self.incidents[incident.id] = incident
        return dataclasses.replace(incident)

    async def update_incident(self, incident: IncidentRecord) -> None:
        if self.update_failures:
            self.update_failures -= 1
            raise ConnectionError("database is down")
        self.incidents[incident.id] = dataclasses.replace(incident)

    async def list_incidents(self, monitor_id: str, limit: int = 50) -> list[IncidentRecord]:
        found = [i for i in self.incidents.values() if i.monitor_id == monitor_id]
        found.sort(key=lambda i: i.opened_at, reverse=True)
        return [dataclasses.replace(i) for i in found[:limit]]


class RecordingNotifier:
    """Notifier that records messages; can fail or raise for chosen recipients."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_for: set[str] = set()
        self.raise_for: set[str] = set()

    async def send(self, recipient_email: str, subject: str, body: str) -> bool:
        if recipient_email in self.raise_for:
            raise RuntimeError("gateway exploded")
        if recipient_email in self.fail_for:
            return False
        self.sent.append((recipient_email, subject, body))
        return True

    def subjects(self) -> list[str]:
        return [subject for _, subject, _ in self.sent]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monitor_store() -> FakeMonitorStore:
    return FakeMonitorStore()


@pytest.fixture
def result_store() -> FakeResultStore:
    return FakeResultStore()


@pytest.fixture
def incident_store() -> FakeIncidentStore:
    return FakeIncidentStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def plans():
    return load_plan_catalog()


@pytest.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()
