from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.contracts import WarningList, WarningView
from app.core.errors import not_found
from app.core.time import utc_now
from app.services.scheduler import Pipeline
from app.services.warnings112 import to_view

router = APIRouter(prefix="/warnings")


def get_pipeline() -> Pipeline:
    raise RuntimeError("Pipeline must be provided by app dependency override")


@router.get("", response_model=WarningList)
def list_warnings(active_only: bool = True, pipeline: Pipeline = Depends(get_pipeline)) -> WarningList:
    snap = pipeline.warnings.read()
    now = utc_now()
    # tier is derived per request, never read from the snapshot
    views = [to_view(w, now) for w in snap.items]
    if active_only:
        views = [v for v in views if v.active]
    return WarningList(
        updated_at=snap.updated_at.isoformat() if snap.updated_at else None,
        cycle=snap.cycle,
        items=views,
    )


@router.get("/{warning_id}", response_model=WarningView)
def get_warning(warning_id: str, pipeline: Pipeline = Depends(get_pipeline)) -> WarningView:
    w = pipeline.warnings.read().get(warning_id)
    if w is None:
        not_found("warning_not_found", f"no current warning with id {warning_id}")
    return to_view(w)
