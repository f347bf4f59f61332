"""Shared FastAPI dependencies.

Process-wide objects (plan catalog, admission locks, monitoring runtime)
live on ``app.state`` and are set up by the lifespan.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from upwatch.server.core.config import get_settings
from upwatch.server.core.incident_engine import IncidentEngine
from upwatch.server.core.notifier import NotifierDispatcher, build_notifier
from upwatch.server.core.plans import PlanCatalog, load_plan_catalog
from upwatch.server.core.quota import QuotaGate, UserLocks
from upwatch.server.core.runtime import MonitoringRuntime
from upwatch.server.db.init import get_session_factory
from upwatch.server.stores.sql import SqlIncidentStore, SqlMonitorStore, SqlResultStore


def get_plan_catalog(request: Request) -> PlanCatalog:
    plans = getattr(request.app.state, "plans", None)
    if plans is None:
        plans = request.app.state.plans = load_plan_catalog(get_settings().plans_file)
    return plans


def get_user_locks(request: Request) -> UserLocks:
    locks = getattr(request.app.state, "user_locks", None)
    if locks is None:
        locks = request.app.state.user_locks = UserLocks()
    return locks


def get_runtime(request: Request) -> MonitoringRuntime | None:
    """Return the monitoring runtime, or None when the scheduler is disabled."""
    return getattr(request.app.state, "runtime", None)


def get_monitor_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlMonitorStore:
    return SqlMonitorStore(session_factory)


def get_result_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlResultStore:
    return SqlResultStore(session_factory)


def get_incident_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlIncidentStore:
    return SqlIncidentStore(session_factory)


def get_quota_gate(
    store: SqlMonitorStore = Depends(get_monitor_store),
    plans: PlanCatalog = Depends(get_plan_catalog),
    locks: UserLocks = Depends(get_user_locks),
) -> QuotaGate:
    return QuotaGate(store, plans, locks)


def get_incident_engine(
    runtime: MonitoringRuntime | None = Depends(get_runtime),
    monitor_store: SqlMonitorStore = Depends(get_monitor_store),
    result_store: SqlResultStore = Depends(get_result_store),
    incident_store: SqlIncidentStore = Depends(get_incident_store),
) -> IncidentEngine:
    """Use the running engine so incident writes share its per-monitor locks."""
    if runtime is not None:
        return runtime.engine
    return IncidentEngine(
        monitor_store,
        result_store,
        incident_store,
        NotifierDispatcher(build_notifier(get_settings())),
    )
