"""Incident engine: turns probe outcomes into monitor status and incidents.

Every outcome is appended to the result store. Outcomes are grouped by check
cycle; once all regions of a cycle have reported, the monitor's aggregate
status is computed by majority vote over the latest outcome of each
configured region, and the state machine advances:

    UP --(failure_threshold aggregate failures)--> DOWN, incident opened
    DOWN --(recovery_threshold aggregate successes)--> UP, incident resolved

While an incident is open, repeated failures renotify at most once per
``renotify_interval``. PAUSED is never produced here: outcomes for paused,
deleted or unknown monitors are discarded.

All work for one monitor runs under that monitor's lock, so outcomes from
different regions can't interleave their read-modify-write of the state.
Evaluation works on a copy of the in-memory state, which replaces the
original only once every store write for the outcome has succeeded.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from upwatch.exceptions import StoreUnavailableError
from upwatch.server.core.notifier import NotifierDispatcher
from upwatch.server.core.retry import RetryPolicy, with_store_retry
from upwatch.server.core.types import (
    PROBER_INTERNAL_ERROR,
    CheckCycle,
    IncidentRecord,
    MonitorSnapshot,
    MonitorStatus,
    NotificationEvent,
    ProbeOutcome,
)
from upwatch.server.stores.base import IncidentStore, MonitorStore, ResultStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IncidentPolicy:
    """Thresholds for opening, resolving and renotifying incidents.

    Attributes:
        failure_threshold: Consecutive aggregate failures before DOWN
        recovery_threshold: Consecutive aggregate successes before UP
        renotify_interval: Minimum time between notices for one open incident
    """

    failure_threshold: int = 2
    recovery_threshold: int = 1
    renotify_interval: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        """Validate thresholds."""
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        if self.recovery_threshold <= 0:
            raise ValueError("recovery_threshold must be positive")
        if self.renotify_interval <= timedelta(0):
            raise ValueError("renotify_interval must be positive")


@dataclass
class MonitorHealth:
    """In-memory incident state for one monitor."""

    region_up: dict[str, bool] = field(default_factory=dict)
    region_error: dict[str, str | None] = field(default_factory=dict)
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_evaluated_cycle: int | None = None
    pending_cycles: dict[int, set[str]] = field(default_factory=dict)
    # Stored status may be stale; re-derive it from the incident store
    needs_resync: bool = False

    def copy(self) -> "MonitorHealth":
        return replace(
            self,
            region_up=dict(self.region_up),
            region_error=dict(self.region_error),
            pending_cycles={n: set(r) for n, r in self.pending_cycles.items()},
        )

    def record(self, outcome: ProbeOutcome) -> None:
        self.region_up[outcome.region] = outcome.is_up
        self.region_error[outcome.region] = outcome.error_message

    def cycle_complete(self, region: str, cycle: CheckCycle | None) -> bool:
        """Register a region's report and say whether the cycle is ready to evaluate."""
        if cycle is None:
            return True
        if self.last_evaluated_cycle is not None and cycle.number <= self.last_evaluated_cycle:
            return False
        reported = self.pending_cycles.setdefault(cycle.number, set())
        reported.add(region)
        if not reported.issuperset(cycle.regions):
            return False
        self.last_evaluated_cycle = cycle.number
        self.pending_cycles = {n: r for n, r in self.pending_cycles.items() if n > cycle.number}
        return True

    def aggregate_down(self, regions: tuple[str, ...]) -> bool:
        """Majority vote: DOWN when more than half the regions last reported down."""
        if not regions:
            return False
        down = sum(1 for region in regions if self.region_up.get(region) is False)
        return down * 2 > len(regions)

    def failure_summary(self, regions: tuple[str, ...]) -> str:
        down = [r for r in regions if self.region_up.get(r) is False]
        details = ", ".join(f"{r}: {self.region_error.get(r) or 'down'}" for r in down)
        return f"{len(down)}/{len(regions)} regions down ({details})"


@dataclass
class ProcessResult:
    """What the engine did with one outcome."""

    monitor_id: str
    accepted: bool
    evaluated: bool = False
    aggregate_down: bool | None = None
    status: MonitorStatus | None = None
    event: NotificationEvent | None = None
    incident_id: str | None = None
    reason: str | None = None


class IncidentEngine:
    """Single writer of Incident records and Monitor.status."""

    def __init__(
        self,
        monitor_store: MonitorStore,
        result_store: ResultStore,
        incident_store: IncidentStore,
        dispatcher: NotifierDispatcher,
        policy: IncidentPolicy | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.monitor_store = monitor_store
        self.result_store = result_store
        self.incident_store = incident_store
        self.dispatcher = dispatcher
        self.policy = policy or IncidentPolicy()
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._health: dict[str, MonitorHealth] = {}
        self._forgotten: set[str] = set()
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def _monitor_lock(self, monitor_id: str) -> AsyncIterator[None]:
        """Hold the monitor's lock; forgotten state is dropped once the last user leaves."""
        self._users[monitor_id] = self._users.get(monitor_id, 0) + 1
        try:
            lock = self._locks.get(monitor_id)
            if lock is None:
                lock = self._locks[monitor_id] = asyncio.Lock()
            async with lock:
                yield
        finally:
            self._users[monitor_id] -= 1
            if not self._users[monitor_id]:
                del self._users[monitor_id]
                if monitor_id in self._forgotten:
                    self._drop(monitor_id)

    def _drop(self, monitor_id: str) -> None:
        self._forgotten.discard(monitor_id)
        self._locks.pop(monitor_id, None)
        self._health.pop(monitor_id, None)

    def health(self, monitor_id: str) -> MonitorHealth | None:
        return self._health.get(monitor_id)

    def forget(self, monitor_id: str) -> None:
        """Drop state for a monitor that is no longer scheduled.

        While outcomes for the monitor are being processed, the state is
        dropped when the last of them finishes.
        """
        if self._users.get(monitor_id):
            self._forgotten.add(monitor_id)
        else:
            self._drop(monitor_id)

    async def _store(self, operation: Callable[[], Any], description: str) -> Any:
        return await with_store_retry(operation, description, self.retry_policy)

    async def process(self, outcome: ProbeOutcome, cycle: CheckCycle | None = None) -> ProcessResult:
        """Apply one probe outcome.

        Args:
            outcome: Result of one probe.
            cycle: Check cycle the probe was dispatched in. Outcomes without a
                cycle are evaluated on their own.

        Returns:
            ProcessResult describing the state change, if any.
        """
        async with self._monitor_lock(outcome.monitor_id):
            try:
                result = await self._process_locked(outcome, cycle)
            except StoreUnavailableError as e:
                logger.error(
                    f"Skipping outcome for monitor {outcome.monitor_id} "
                    f"from {outcome.region}: {e}"
                )
                health = self._health.get(outcome.monitor_id)
                if health is not None:
                    health.needs_resync = True
                return ProcessResult(
                    monitor_id=outcome.monitor_id, accepted=False, reason="store_unavailable"
                )
            if result.reason == "inactive":
                self._forgotten.add(outcome.monitor_id)
            return result

    async def _process_locked(
        self, outcome: ProbeOutcome, cycle: CheckCycle | None
    ) -> ProcessResult:
        monitor = await self._active_monitor(outcome.monitor_id)
        if monitor is None:
            logger.debug(f"Discarding outcome for inactive monitor {outcome.monitor_id}")
            return ProcessResult(monitor_id=outcome.monitor_id, accepted=False, reason="inactive")

        await self._store(lambda: self.result_store.append_result(outcome), "append_result")
        if outcome.error_message == PROBER_INTERNAL_ERROR:
            await self._write_log(monitor.id, outcome.region, "error", "Prober internal error")

        # Fresh state knows nothing about incidents left open by an earlier run
        saved = self._health.setdefault(monitor.id, MonitorHealth(needs_resync=True))
        health = saved.copy()
        health.record(outcome)

        current: MonitorStatus = "DOWN" if monitor.status == "DOWN" else "UP"
        result = ProcessResult(monitor_id=monitor.id, accepted=True, status=current)
        incident: IncidentRecord | None = None

        if health.cycle_complete(outcome.region, cycle):
            if health.needs_resync:
                open_incident = await self._store(
                    lambda: self.incident_store.find_open_incident(monitor.id),
                    "find_open_incident",
                )
                current = "DOWN" if open_incident else "UP"
                health.needs_resync = False
            result.evaluated = True
            result.aggregate_down = health.aggregate_down(monitor.regions or (outcome.region,))
            if result.aggregate_down:
                status, result.event, incident = await self._on_failure(monitor, health, current)
            else:
                status, result.event, incident = await self._on_success(monitor, health, current)
            result.status = status
            result.incident_id = incident.id if incident else None

        updated = await self._store(
            lambda: self.monitor_store.update_status(monitor.id, result.status, outcome.checked_at),
            "update_status",
        )
        if not updated:
            logger.info(f"Monitor {monitor.id} was paused or deleted mid-check, dropping outcome")
            return ProcessResult(monitor_id=monitor.id, accepted=False, reason="inactive")
        self._health[monitor.id] = health

        if result.event is not None and incident is not None:
            await self._dispatch(result.event, incident, monitor)
        return result

    async def _active_monitor(self, monitor_id: str) -> MonitorSnapshot | None:
        monitor: MonitorSnapshot | None = await self._store(
            lambda: self.monitor_store.get_monitor(monitor_id), "get_monitor"
        )
        if monitor is None or monitor.is_deleted or monitor.is_paused:
            return None
        return monitor

    async def _on_failure(
        self, monitor: MonitorSnapshot, health: MonitorHealth, current: MonitorStatus
    ) -> tuple[MonitorStatus, NotificationEvent | None, IncidentRecord | None]:
        health.consecutive_failures += 1
        health.consecutive_successes = 0
        if current != "DOWN" and health.consecutive_failures < self.policy.failure_threshold:
            return current, None, None

        now = self._clock()
        incident: IncidentRecord | None = await self._store(
            lambda: self.incident_store.find_open_incident(monitor.id), "find_open_incident"
        )
        if incident is None:
            if health.consecutive_failures < self.policy.failure_threshold:
                return "UP", None, None
            # A pause that landed after the outcome arrived must not open an incident
            if await self._active_monitor(monitor.id) is None:
                return current, None, None
            summary = health.failure_summary(monitor.regions)
            incident = await self._store(
                lambda: self.incident_store.create_incident(
                    monitor.id, now, summary, last_notified_at=now
                ),
                "create_incident",
            )
            logger.info(f"Monitor {monitor.id} is DOWN, opened incident {incident.id}: {summary}")
            await self._write_log(
                monitor.id, "*", "error", "Incident opened", {"incident_id": incident.id}
            )
            return "DOWN", "opened", incident

        if incident.status != "OPEN":
            return "DOWN", None, incident
        # Stored status still UP means the opening notice never went out
        if monitor.status != "DOWN" or incident.last_notified_at is None:
            event: NotificationEvent = "opened"
        elif self._renotify_due(incident, now):
            event = "renotify"
        else:
            return "DOWN", None, incident
        incident.last_notified_at = now
        await self._store(lambda: self.incident_store.update_incident(incident), "update_incident")
        if event == "opened":
            logger.info(f"Monitor {monitor.id} is DOWN, announcing incident {incident.id}")
        else:
            logger.info(f"Monitor {monitor.id} still DOWN, renotifying incident {incident.id}")
        return "DOWN", event, incident

    async def _on_success(
        self, monitor: MonitorSnapshot, health: MonitorHealth, current: MonitorStatus
    ) -> tuple[MonitorStatus, NotificationEvent | None, IncidentRecord | None]:
        health.consecutive_successes += 1
        health.consecutive_failures = 0
        if current != "DOWN":
            if monitor.status == "DOWN":
                return await self._unannounced_resolution(monitor)
            return "UP", None, None
        if health.consecutive_successes < self.policy.recovery_threshold:
            return "DOWN", None, None

        now = self._clock()
        incident: IncidentRecord | None = await self._store(
            lambda: self.incident_store.find_open_incident(monitor.id), "find_open_incident"
        )
        if incident is None:
            return await self._unannounced_resolution(monitor)

        incident.status = "RESOLVED"
        incident.resolved_at = now
        await self._store(lambda: self.incident_store.update_incident(incident), "update_incident")
        logger.info(f"Monitor {monitor.id} is UP, resolved incident {incident.id}")
        await self._write_log(
            monitor.id, "*", "info", "Incident resolved", {"incident_id": incident.id}
        )
        return "UP", "resolved", incident

    async def _unannounced_resolution(
        self, monitor: MonitorSnapshot
    ) -> tuple[MonitorStatus, NotificationEvent | None, IncidentRecord | None]:
        """Monitor stored as DOWN with nothing unresolved.

        The incident was resolved but the status write after it failed, so the
        resolution notice never went out.
        """
        latest: list[IncidentRecord] = await self._store(
            lambda: self.incident_store.list_incidents(monitor.id, limit=1), "list_incidents"
        )
        if latest and latest[0].status == "RESOLVED":
            logger.info(f"Monitor {monitor.id} is UP, announcing resolved incident {latest[0].id}")
            return "UP", "resolved", latest[0]
        logger.info(f"Monitor {monitor.id} is UP (no open incident to resolve)")
        return "UP", None, None

    def _renotify_due(self, incident: IncidentRecord, now: datetime) -> bool:
        if incident.last_notified_at is None:
            return True
        last = incident.last_notified_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last > self.policy.renotify_interval

    async def _dispatch(
        self, event: NotificationEvent, incident: IncidentRecord, monitor: MonitorSnapshot
    ) -> None:
        try:
            recipients = await self._store(
                lambda: self.monitor_store.list_recipients(monitor.id), "list_recipients"
            )
        except StoreUnavailableError as e:
            logger.error(f"Cannot load recipients for incident {incident.id} ({event}): {e}")
            return
        await self.dispatcher.notify(event, incident, monitor, recipients)

    async def _write_log(
        self,
        monitor_id: str,
        region: str,
        level: str,
        message: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        try:
            await self._store(
                lambda: self.result_store.append_log(monitor_id, region, level, message, meta),
                "append_log",
            )
        except StoreUnavailableError as e:
            logger.warning(f"Monitor log entry dropped for {monitor_id}: {e}")

    async def acknowledge(self, incident_id: str) -> IncidentRecord | None:
        """Mark an OPEN incident ACKNOWLEDGED, which stops renotification.

        Returns:
            The incident (unchanged unless it was OPEN), or None if unknown.
        """
        incident: IncidentRecord | None = await self._store(
            lambda: self.incident_store.get_incident(incident_id), "get_incident"
        )
        if incident is None:
            return None
        async with self._monitor_lock(incident.monitor_id):
            current: IncidentRecord | None = await self._store(
                lambda: self.incident_store.get_incident(incident_id), "get_incident"
            )
            if current is None or current.status != "OPEN":
                return current
            current.status = "ACKNOWLEDGED"
            await self._store(lambda: self.incident_store.update_incident(current), "update_incident")
            logger.info(f"Incident {incident_id} acknowledged")
            return current
