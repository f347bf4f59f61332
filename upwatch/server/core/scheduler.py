"""Check scheduler for monitors.

Owns the schedule of active monitors: a map of monitor id to schedule entry
plus a min-heap of due times. Each ``tick`` dispatches the due monitors to
their region worker pools as one check cycle and reschedules them on their
interval. ``reconcile`` keeps the schedule in line with the monitor store.
"""

import heapq
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from upwatch.exceptions import StoreUnavailableError
from upwatch.server.core.retry import RetryPolicy, with_store_retry
from upwatch.server.core.types import CheckCycle, MonitorSnapshot, ProbeJob
from upwatch.server.stores.base import MonitorStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegionPool(Protocol):
    @property
    def is_saturated(self) -> bool: ...

    def enqueue(self, job: ProbeJob) -> None: ...


class PoolProvider(Protocol):
    def get(self, region: str) -> RegionPool: ...


@dataclass
class ScheduleEntry:
    """Schedule state for one monitor."""

    monitor: MonitorSnapshot
    next_due_at: datetime
    # Sequence of the live heap item; older heap items for this monitor are stale
    heap_seq: int = -1

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.monitor.interval_minutes)


@dataclass
class TickReport:
    """What a single tick did."""

    cycles: int = 0
    dispatched: int = 0
    skipped_overrun: int = 0
    deferred: int = 0


@dataclass
class ReconcileReport:
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


class CheckScheduler:
    """Selects due checks and hands them to region worker pools.

    Usage:
        scheduler = CheckScheduler(monitor_store, pools)
        await scheduler.reconcile()
        scheduler.tick()
    """

    def __init__(
        self,
        monitor_store: MonitorStore,
        pools: PoolProvider,
        *,
        backpressure_delay: timedelta = timedelta(seconds=5),
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
        on_cancel: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            monitor_store: Source of active monitors for reconciliation.
            pools: Provides the worker pool of each region.
            backpressure_delay: How long a non-DOWN monitor is held back when
                one of its region pools is saturated.
            retry_policy: Backoff for store reads.
            clock: Returns the current time (timezone-aware UTC).
            on_cancel: Called with the id of every monitor removed from the schedule.
        """
        self.monitor_store = monitor_store
        self.pools = pools
        self.backpressure_delay = backpressure_delay
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._on_cancel = on_cancel
        self._entries: dict[str, ScheduleEntry] = {}
        self._heap: list[tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._cycles = itertools.count(1)
        self._in_flight: set[tuple[str, str]] = set()

    def __contains__(self, monitor_id: object) -> bool:
        return monitor_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def next_due(self, monitor_id: str) -> datetime | None:
        entry = self._entries.get(monitor_id)
        return entry.next_due_at if entry else None

    def is_in_flight(self, monitor_id: str, region: str) -> bool:
        return (monitor_id, region) in self._in_flight

    def _push(self, entry: ScheduleEntry, due: datetime) -> None:
        entry.next_due_at = due
        entry.heap_seq = next(self._seq)
        heapq.heappush(self._heap, (due, entry.heap_seq, entry.monitor.id))

    def upsert(self, monitor: MonitorSnapshot, now: datetime | None = None) -> bool:
        """Schedule a new monitor or refresh an existing entry.

        New monitors are due immediately. A shortened interval pulls the next
        due time in to at most ``now + interval``. Monitors that are paused,
        deleted or have no regions are cancelled instead.

        Returns:
            True if the monitor was newly added.
        """
        if not monitor.schedulable:
            self.cancel(monitor.id)
            return False

        now = now or self._clock()
        entry = self._entries.get(monitor.id)
        if entry is None:
            entry = ScheduleEntry(monitor=monitor, next_due_at=now)
            self._entries[monitor.id] = entry
            self._push(entry, now)
            logger.debug(f"Scheduled monitor {monitor.id} every {monitor.interval_minutes} min")
            return True

        entry.monitor = monitor
        latest = now + entry.interval
        if entry.next_due_at > latest:
            self._push(entry, latest)
        return False

    def cancel(self, monitor_id: str) -> bool:
        """Remove a monitor from the schedule. In-flight probes are left to finish."""
        entry = self._entries.pop(monitor_id, None)
        if entry is None:
            return False
        logger.debug(f"Cancelled schedule for monitor {monitor_id}")
        if self._on_cancel is not None:
            self._on_cancel(monitor_id)
        return True

    def complete(self, monitor_id: str, region: str) -> None:
        """Mark a dispatched probe as finished."""
        self._in_flight.discard((monitor_id, region))

    async def reconcile(self) -> ReconcileReport | None:
        """Re-read active monitors and bring the schedule in line.

        Returns:
            What changed, or None if the store could not be read.
        """
        try:
            monitors: list[MonitorSnapshot] = await with_store_retry(
                self.monitor_store.list_active_monitors,
                "list_active_monitors",
                self.retry_policy,
            )
        except StoreUnavailableError as e:
            logger.error(f"Reconciliation skipped, keeping current schedule: {e}")
            return None

        now = self._clock()
        report = ReconcileReport()
        seen: set[str] = set()
        for monitor in monitors:
            if not monitor.schedulable:
                continue
            seen.add(monitor.id)
            if self.upsert(monitor, now):
                report.added.append(monitor.id)
            else:
                report.updated.append(monitor.id)

        for monitor_id in [mid for mid in self._entries if mid not in seen]:
            self.cancel(monitor_id)
            report.removed.append(monitor_id)

        if report.added or report.removed:
            logger.info(
                f"Reconciled schedule: {len(report.added)} added, "
                f"{len(report.removed)} removed, {len(self._entries)} scheduled"
            )
        return report

    def tick(self, now: datetime | None = None) -> TickReport:
        """Dispatch every monitor whose next due time has passed.

        DOWN monitors are dispatched first so they keep priority under load.
        """
        now = now or self._clock()
        report = TickReport()

        due: list[ScheduleEntry] = []
        while self._heap and self._heap[0][0] <= now:
            _, seq, monitor_id = heapq.heappop(self._heap)
            entry = self._entries.get(monitor_id)
            if entry is None or entry.heap_seq != seq:
                continue
            due.append(entry)

        due.sort(key=lambda e: e.monitor.status != "DOWN")
        for entry in due:
            self._dispatch(entry, now, report)
        return report

    def _dispatch(self, entry: ScheduleEntry, now: datetime, report: TickReport) -> None:
        monitor = entry.monitor
        if monitor.status != "DOWN" and any(
            self.pools.get(region).is_saturated for region in monitor.regions
        ):
            report.deferred += 1
            logger.warning(
                f"Region pool saturated, deferring monitor {monitor.id} "
                f"by {self.backpressure_delay.total_seconds()}s"
            )
            self._push(entry, now + self.backpressure_delay)
            return

        regions: list[str] = []
        for region in monitor.regions:
            if (monitor.id, region) in self._in_flight:
                report.skipped_overrun += 1
                logger.warning(
                    f"Previous check of monitor {monitor.id} in {region} still running, "
                    f"skipping this round"
                )
                continue
            regions.append(region)

        if regions:
            cycle = CheckCycle(number=next(self._cycles), regions=tuple(regions))
            target = monitor.to_target()
            for region in regions:
                self._in_flight.add((monitor.id, region))
                self.pools.get(region).enqueue(
                    ProbeJob(
                        monitor_id=monitor.id,
                        region=region,
                        target=target,
                        cycle=cycle,
                        scheduled_at=entry.next_due_at,
                    )
                )
            report.cycles += 1
            report.dispatched += len(regions)

        next_due = entry.next_due_at + entry.interval
        if next_due <= now:
            next_due = now + entry.interval
        self._push(entry, next_due)

    def get_stats(self) -> dict[str, Any]:
        """Get current scheduler statistics."""
        return {
            "scheduled": len(self._entries),
            "in_flight": len(self._in_flight),
            "heap_size": len(self._heap),
        }
