from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from app.core.contracts import Incident, IncidentCategory, IncidentList, IncidentStatus
from app.core.errors import not_found
from app.services.scheduler import Pipeline

router = APIRouter(prefix="/incidents")


def get_pipeline() -> Pipeline:
    raise RuntimeError("Pipeline must be provided by app dependency override")


@router.get("", response_model=IncidentList)
def list_incidents(
    category: Optional[IncidentCategory] = None,
    status: Optional[IncidentStatus] = None,
    pipeline: Pipeline = Depends(get_pipeline),
) -> IncidentList:
    snap = pipeline.incidents.read()
    items = [
        i for i in snap.items
        if (category is None or i.category == category) and (status is None or i.status == status)
    ]
    return IncidentList(
        updated_at=snap.updated_at.isoformat() if snap.updated_at else None,
        cycle=snap.cycle,
        items=items,
    )


@router.get("/{incident_id}", response_model=Incident)
def get_incident(incident_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> Incident:
    inc = pipeline.incidents.read().get(incident_id)
    if inc is None:
        not_found("incident_not_found", f"no current incident with id {incident_id}")
    return inc
