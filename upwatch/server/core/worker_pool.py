"""Per-region worker pools that execute probe jobs.

Each region gets one pool: a FIFO queue drained by a fixed number of worker
tasks sharing one HTTP client. The pool never grows its queue silently:
``is_saturated`` tells the scheduler to hold back lower-priority dispatch
once the queue reaches its high-water mark.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from upwatch.server.core.prober import DEFAULT_TIMEOUT_MARGIN_SECONDS, probe
from upwatch.server.core.types import PROBER_INTERNAL_ERROR, ProbeJob, ProbeOutcome

logger = logging.getLogger(__name__)

Prober = Callable[..., Awaitable[ProbeOutcome]]
OutcomeHandler = Callable[[ProbeJob, ProbeOutcome], Awaitable[None]]


@dataclass
class PoolProfile:
    """Configuration profile for a region worker pool.

    Attributes:
        concurrency: Number of workers, i.e. maximum in-flight probes
        high_water_mark: Queue depth at which the pool reports saturation
        timeout_margin: Seconds allowed beyond a target's timeout
    """

    concurrency: int = 50
    high_water_mark: int = 500
    timeout_margin: float = DEFAULT_TIMEOUT_MARGIN_SECONDS

    def __post_init__(self) -> None:
        """Validate pool limits."""
        if self.concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if self.high_water_mark <= 0:
            raise ValueError("high_water_mark must be positive")
        if self.timeout_margin < 0:
            raise ValueError("timeout_margin must not be negative")


class RegionWorkerPool:
    """Bounded executor for the probes of one region.

    Usage:
        pool = RegionWorkerPool("us-east-1", handler)
        pool.start()
        pool.enqueue(job)
        ...
        await pool.stop()
    """

    def __init__(
        self,
        region: str,
        handler: OutcomeHandler,
        profile: PoolProfile | None = None,
        *,
        prober: Prober = probe,
        client: httpx.AsyncClient | None = None,
        proxy: str | None = None,
    ) -> None:
        """Initialize a pool for one region.

        Args:
            region: Region label stamped on every outcome.
            handler: Coroutine receiving each finished job and its outcome.
            profile: Pool limits. Uses defaults if not provided.
            prober: Probe function, replaceable for tests.
            client: Shared HTTP client. The pool creates and owns one if omitted.
            proxy: Egress proxy for the owned client.
        """
        self.region = region
        self.profile = profile or PoolProfile()
        self._handler = handler
        self._prober = prober
        self._client = client
        self._owns_client = client is None
        self._proxy = proxy
        self._queue: asyncio.Queue[ProbeJob] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._in_flight = 0
        self._processed = 0
        self._internal_errors = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_saturated(self) -> bool:
        """True once queued jobs reach the high-water mark."""
        return self._queue.qsize() >= self.profile.high_water_mark

    def start(self) -> None:
        """Spawn the worker tasks. Must be called from a running event loop."""
        if self._workers:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(proxy=self._proxy) if self._proxy else httpx.AsyncClient()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"probe-{self.region}-{index}")
            for index in range(self.profile.concurrency)
        ]
        logger.info(
            f"Worker pool for {self.region} started with {self.profile.concurrency} workers"
        )

    async def stop(self) -> None:
        """Cancel the workers and close the owned HTTP client.

        Queued jobs that were not started are dropped.
        """
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info(f"Worker pool for {self.region} stopped")

    def enqueue(self, job: ProbeJob) -> None:
        """Queue a probe job for this region."""
        if job.region != self.region:
            raise ValueError(f"Job for region {job.region} queued on pool {self.region}")
        self._queue.put_nowait(job)

    async def join(self) -> None:
        """Wait until every queued job has been handled."""
        await self._queue.join()

    def get_stats(self) -> dict[str, Any]:
        """Get current pool statistics."""
        return {
            "region": self.region,
            "workers": len(self._workers),
            "queue_depth": self.queue_depth,
            "in_flight": self._in_flight,
            "processed": self._processed,
            "internal_errors": self._internal_errors,
            "saturated": self.is_saturated,
        }

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self._in_flight += 1
            try:
                outcome = await self._run_probe(job)
                try:
                    await self._handler(job, outcome)
                except Exception:
                    logger.exception(
                        f"Outcome handler failed for monitor {job.monitor_id} in {self.region}"
                    )
            finally:
                self._in_flight -= 1
                self._processed += 1
                self._queue.task_done()

    async def _run_probe(self, job: ProbeJob) -> ProbeOutcome:
        try:
            return await self._prober(
                job.target,
                self.region,
                monitor_id=job.monitor_id,
                client=self._client,
                timeout_margin=self.profile.timeout_margin,
            )
        except Exception:
            self._internal_errors += 1
            logger.exception(f"Prober crashed for monitor {job.monitor_id} in {self.region}")
            return ProbeOutcome(
                monitor_id=job.monitor_id,
                region=self.region,
                checked_at=datetime.now(timezone.utc),
                is_up=False,
                status_code=None,
                response_time_ms=0,
                error_message=PROBER_INTERNAL_ERROR,
            )


class WorkerPoolRegistry:
    """Creates one pool per region on first use and tracks them all."""

    def __init__(
        self,
        handler: OutcomeHandler,
        profile: PoolProfile | None = None,
        *,
        prober: Prober = probe,
        proxies: dict[str, str] | None = None,
    ) -> None:
        self.profile = profile or PoolProfile()
        self._handler = handler
        self._prober = prober
        self._proxies = proxies or {}
        self._pools: dict[str, RegionWorkerPool] = {}

    def get(self, region: str) -> RegionWorkerPool:
        """Get or create (and start) the pool for a region."""
        pool = self._pools.get(region)
        if pool is None:
            pool = RegionWorkerPool(
                region,
                self._handler,
                self.profile,
                prober=self._prober,
                proxy=self._proxies.get(region),
            )
            pool.start()
            self._pools[region] = pool
        return pool

    def __contains__(self, region: object) -> bool:
        return region in self._pools

    @property
    def regions(self) -> list[str]:
        return sorted(self._pools)

    async def join(self) -> None:
        """Wait until all pools have drained their queues."""
        for pool in list(self._pools.values()):
            await pool.join()

    async def stop_all(self) -> None:
        pools, self._pools = self._pools, {}
        await asyncio.gather(*(pool.stop() for pool in pools.values()))

    def get_stats(self) -> dict[str, Any]:
        return {region: pool.get_stats() for region, pool in sorted(self._pools.items())}
