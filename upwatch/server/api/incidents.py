"""Incident endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException

from upwatch.server.api.deps import get_incident_engine
from upwatch.server.api.schemas.monitor import IncidentResponse
from upwatch.server.core.incident_engine import IncidentEngine

router = APIRouter(prefix="/api/v1/incidents", tags=["incidents"])


@router.post("/{incident_id}/acknowledge", response_model=IncidentResponse)
async def acknowledge_incident(
    incident_id: uuid.UUID, engine: IncidentEngine = Depends(get_incident_engine)
) -> IncidentResponse:
    """Acknowledge an open incident, which stops repeat notifications.

    Acknowledging an already acknowledged incident is a no-op.
    """
    incident = await engine.acknowledge(str(incident_id))
    if incident is None:
        raise HTTPException(status_code=404, detail=f"Incident {incident_id} not found")
    if incident.status == "RESOLVED":
        raise HTTPException(status_code=409, detail=f"Incident {incident_id} is already resolved")
    return IncidentResponse.model_validate(incident)
