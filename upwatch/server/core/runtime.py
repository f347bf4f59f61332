"""Monitoring runtime: wires scheduler, worker pools and incident engine.

Uses APScheduler's AsyncIOScheduler to drive the scheduler tick and the
periodic reconciliation with the monitor store.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upwatch.server.core.config import Settings
from upwatch.server.core.incident_engine import IncidentEngine, IncidentPolicy
from upwatch.server.core.notifier import Notifier, NotifierDispatcher, build_notifier
from upwatch.server.core.prober import probe
from upwatch.server.core.retry import RetryPolicy
from upwatch.server.core.scheduler import CheckScheduler
from upwatch.server.core.types import MonitorSnapshot, ProbeJob, ProbeOutcome
from upwatch.server.core.worker_pool import PoolProfile, Prober, WorkerPoolRegistry
from upwatch.server.stores.base import IncidentStore, MonitorStore, ResultStore
from upwatch.server.stores.sql import SqlIncidentStore, SqlMonitorStore, SqlResultStore

logger = logging.getLogger(__name__)

# APScheduler job ids
TICK_JOB_ID = "check_scheduler_tick"
RECONCILE_JOB_ID = "check_scheduler_reconcile"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringRuntime:
    """Owns the background monitoring machinery of one process.

    Usage:
        runtime = MonitoringRuntime.from_settings(settings, AsyncSessionLocal)
        await runtime.start()
        ...
        await runtime.stop()
    """

    def __init__(
        self,
        monitor_store: MonitorStore,
        result_store: ResultStore,
        incident_store: IncidentStore,
        notifier: Notifier,
        *,
        pool_profile: PoolProfile | None = None,
        policy: IncidentPolicy | None = None,
        retry_policy: RetryPolicy | None = None,
        backpressure_delay: timedelta = timedelta(seconds=5),
        tick_interval: float = 1.0,
        reconcile_interval: float = 30.0,
        proxies: dict[str, str] | None = None,
        prober: Prober = probe,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.tick_interval = tick_interval
        self.reconcile_interval = reconcile_interval
        self.engine = IncidentEngine(
            monitor_store,
            result_store,
            incident_store,
            NotifierDispatcher(notifier),
            policy,
            retry_policy=retry_policy,
            clock=clock,
        )
        self.pools = WorkerPoolRegistry(
            self.handle_outcome, pool_profile, prober=prober, proxies=proxies
        )
        self.scheduler = CheckScheduler(
            monitor_store,
            self.pools,
            backpressure_delay=backpressure_delay,
            retry_policy=retry_policy,
            clock=clock,
            on_cancel=self.engine.forget,
        )
        self._jobs = AsyncIOScheduler()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier | None = None,
    ) -> "MonitoringRuntime":
        """Build a runtime backed by the SQL stores."""
        return cls(
            SqlMonitorStore(session_factory),
            SqlResultStore(session_factory),
            SqlIncidentStore(session_factory),
            notifier or build_notifier(settings),
            pool_profile=PoolProfile(
                concurrency=settings.region_concurrency,
                high_water_mark=settings.queue_high_water_mark,
                timeout_margin=settings.probe_timeout_margin_seconds,
            ),
            policy=IncidentPolicy(
                failure_threshold=settings.failure_threshold,
                recovery_threshold=settings.recovery_threshold,
                renotify_interval=timedelta(minutes=settings.renotify_interval_minutes),
            ),
            retry_policy=RetryPolicy(
                attempts=settings.store_retry_attempts,
                delay=settings.store_retry_delay_seconds,
                multiplier=settings.store_retry_multiplier,
            ),
            backpressure_delay=timedelta(seconds=settings.backpressure_delay_seconds),
            tick_interval=settings.tick_interval_seconds,
            reconcile_interval=settings.reconcile_interval_seconds,
            proxies=settings.region_proxies,
        )

    @property
    def running(self) -> bool:
        return self._jobs.running

    async def handle_outcome(self, job: ProbeJob, outcome: ProbeOutcome) -> None:
        """Feed a finished probe to the engine and release its in-flight slot."""
        try:
            await self.engine.process(outcome, job.cycle)
        finally:
            self.scheduler.complete(job.monitor_id, job.region)

    async def _tick(self) -> None:
        report = self.scheduler.tick()
        if report.cycles or report.deferred or report.skipped_overrun:
            logger.debug(
                f"Tick: {report.cycles} cycles, {report.dispatched} probes, "
                f"{report.deferred} deferred, {report.skipped_overrun} overruns"
            )

    async def _reconcile(self) -> None:
        await self.scheduler.reconcile()

    async def start(self) -> None:
        """Load the schedule and start the tick and reconciliation jobs."""
        await self.scheduler.reconcile()
        self._jobs.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.tick_interval),
            id=TICK_JOB_ID,
            name="Check scheduler tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._jobs.add_job(
            self._reconcile,
            trigger=IntervalTrigger(seconds=self.reconcile_interval),
            id=RECONCILE_JOB_ID,
            name="Schedule reconciliation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._jobs.start()
        logger.info(
            f"Monitoring runtime started: {len(self.scheduler)} monitors scheduled, "
            f"tick every {self.tick_interval}s"
        )

    async def stop(self) -> None:
        """Stop the jobs and the worker pools. In-flight probes are abandoned."""
        if self._jobs.running:
            self._jobs.shutdown(wait=False)
        await self.pools.stop_all()
        logger.info("Monitoring runtime stopped")

    def schedule(self, monitor: MonitorSnapshot) -> None:
        """Schedule a created or resumed monitor without waiting for reconciliation."""
        self.scheduler.upsert(monitor)

    def unschedule(self, monitor_id: str) -> None:
        """Stop scheduling a paused or deleted monitor."""
        self.scheduler.cancel(monitor_id)

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "scheduler": self.scheduler.get_stats(),
            "pools": self.pools.get_stats(),
        }
