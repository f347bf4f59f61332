"""Monitor endpoints used by the CRUD layer and dashboards.

Creation of monitors and alert recipients goes through the quota gate;
pause, resume and delete update the schedule immediately when the
monitoring runtime is running.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status

from upwatch.server.api.deps import (
    get_incident_store,
    get_monitor_store,
    get_quota_gate,
    get_result_store,
    get_runtime,
)
from upwatch.server.api.plans import decision_response
from upwatch.server.api.schemas.monitor import (
    IncidentResponse,
    MonitorCreate,
    MonitorResponse,
    MonitorResultResponse,
    MonitorStatusResponse,
    RecipientCreate,
    RecipientResponse,
)
from upwatch.server.core.quota import QuotaDecision, QuotaGate
from upwatch.server.core.runtime import MonitoringRuntime
from upwatch.server.core.types import MonitorSnapshot
from upwatch.server.stores.sql import SqlIncidentStore, SqlMonitorStore, SqlResultStore

router = APIRouter(prefix="/api/v1/monitors", tags=["monitors"])


def _denied(decision: QuotaDecision) -> HTTPException:
    code = (
        status.HTTP_400_BAD_REQUEST
        if decision.resource_type in ("checkInterval", "regions")
        else status.HTTP_403_FORBIDDEN
    )
    return HTTPException(status_code=code, detail=decision_response(decision).model_dump())


async def _get_live_monitor(store: SqlMonitorStore, monitor_id: uuid.UUID) -> MonitorSnapshot:
    monitor = await store.get_monitor(str(monitor_id))
    if monitor is None or monitor.is_deleted:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    return monitor


@router.post("", response_model=MonitorResponse, status_code=status.HTTP_201_CREATED)
async def create_monitor(
    body: MonitorCreate,
    store: SqlMonitorStore = Depends(get_monitor_store),
    gate: QuotaGate = Depends(get_quota_gate),
    runtime: MonitoringRuntime | None = Depends(get_runtime),
) -> MonitorResponse:
    """Create a monitor if the user's plan allows it.

    Returns 403 with the limit and current usage when the monitor quota is
    used up, and 400 when the interval or regions are outside the plan.
    """
    user_id = str(body.user_id)
    settings_decision = await gate.check_monitor_settings(
        user_id, body.interval_minutes, body.regions
    )
    if not settings_decision.allowed:
        raise _denied(settings_decision)

    values = body.model_dump()
    values["user_id"] = user_id
    values["regions"] = list(dict.fromkeys(body.regions))
    result = await gate.admit(
        user_id, "monitors", lambda limit: store.create_monitor(values, limit=limit)
    )
    if not result.decision.allowed or result.created is None:
        raise _denied(result.decision)

    if runtime is not None:
        runtime.schedule(result.created)
    return MonitorResponse.model_validate(result.created)


@router.post("/{monitor_id}/pause", response_model=MonitorResponse)
async def pause_monitor(
    monitor_id: uuid.UUID,
    store: SqlMonitorStore = Depends(get_monitor_store),
    runtime: MonitoringRuntime | None = Depends(get_runtime),
) -> MonitorResponse:
    """Pause a monitor. A probe already running finishes but is not recorded."""
    monitor = await store.set_paused(str(monitor_id), True)
    if monitor is None:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    if runtime is not None:
        runtime.unschedule(monitor.id)
    return MonitorResponse.model_validate(monitor)


@router.post("/{monitor_id}/resume", response_model=MonitorResponse)
async def resume_monitor(
    monitor_id: uuid.UUID,
    store: SqlMonitorStore = Depends(get_monitor_store),
    runtime: MonitoringRuntime | None = Depends(get_runtime),
) -> MonitorResponse:
    monitor = await store.set_paused(str(monitor_id), False)
    if monitor is None:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    if runtime is not None:
        runtime.schedule(monitor)
    return MonitorResponse.model_validate(monitor)


@router.delete("/{monitor_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_monitor(
    monitor_id: uuid.UUID,
    store: SqlMonitorStore = Depends(get_monitor_store),
    runtime: MonitoringRuntime | None = Depends(get_runtime),
) -> None:
    """Soft-delete a monitor. Its results and incidents are kept."""
    monitor = await store.soft_delete(str(monitor_id))
    if monitor is None:
        raise HTTPException(status_code=404, detail=f"Monitor {monitor_id} not found")
    if runtime is not None:
        runtime.unschedule(monitor.id)


@router.post(
    "/{monitor_id}/recipients",
    response_model=RecipientResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_recipient(
    monitor_id: uuid.UUID,
    body: RecipientCreate,
    store: SqlMonitorStore = Depends(get_monitor_store),
    gate: QuotaGate = Depends(get_quota_gate),
) -> RecipientResponse:
    """Add an alert recipient if the owner's plan allows it."""
    monitor = await _get_live_monitor(store, monitor_id)
    result = await gate.admit(
        monitor.user_id,
        "alertRecipients",
        lambda limit: store.create_recipient(monitor.user_id, monitor.id, body.email, limit=limit),
    )
    if not result.decision.allowed or result.created is None:
        raise _denied(result.decision)
    return RecipientResponse.model_validate(result.created)


@router.get("/{monitor_id}/status", response_model=MonitorStatusResponse)
async def get_monitor_status(
    monitor_id: uuid.UUID,
    store: SqlMonitorStore = Depends(get_monitor_store),
    incidents: SqlIncidentStore = Depends(get_incident_store),
) -> MonitorStatusResponse:
    monitor = await _get_live_monitor(store, monitor_id)
    incident = await incidents.find_open_incident(monitor.id)
    return MonitorStatusResponse(
        monitor_id=monitor_id,
        status=monitor.status,
        is_paused=monitor.is_paused,
        last_checked_at=monitor.last_checked_at,
        open_incident=IncidentResponse.model_validate(incident) if incident else None,
    )


@router.get("/{monitor_id}/results", response_model=list[MonitorResultResponse])
async def list_monitor_results(
    monitor_id: uuid.UUID,
    limit: int = Query(100, ge=1, le=1000, description="Maximum results to return"),
    store: SqlMonitorStore = Depends(get_monitor_store),
    results: SqlResultStore = Depends(get_result_store),
) -> list[MonitorResultResponse]:
    """List probe results, most recent first."""
    await _get_live_monitor(store, monitor_id)
    rows = await results.list_results(str(monitor_id), limit=limit)
    return [MonitorResultResponse.model_validate(row) for row in rows]


@router.get("/{monitor_id}/incidents", response_model=list[IncidentResponse])
async def list_monitor_incidents(
    monitor_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=500),
    store: SqlMonitorStore = Depends(get_monitor_store),
    incidents: SqlIncidentStore = Depends(get_incident_store),
) -> list[IncidentResponse]:
    await _get_live_monitor(store, monitor_id)
    rows = await incidents.list_incidents(str(monitor_id), limit=limit)
    return [IncidentResponse.model_validate(row) for row in rows]
