from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.core.errors import bad_request
from app.core.time import utc_now
from app.services.scheduler import SOURCES, Pipeline

router = APIRouter()


def get_pipeline() -> Pipeline:
    raise RuntimeError("Pipeline must be provided by app dependency override")


def _source_status(pipeline: Pipeline, source: str) -> Dict[str, Any]:
    store = pipeline.incidents if source == "incidents" else pipeline.warnings
    snap = store.read()
    last = pipeline.last_report(source)
    return {
        "count": len(snap),
        "cycle": snap.cycle,
        "updated_at": snap.updated_at.isoformat() if snap.updated_at else None,
        "age_s": round((utc_now() - snap.updated_at).total_seconds(), 1) if snap.updated_at else None,
        "running": pipeline.is_running(source),
        "last_cycle": last.model_dump() if last else None,
    }


@router.get("/health")
def health(pipeline: Pipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    sources = {s: _source_status(pipeline, s) for s in SOURCES}
    return {
        "status": "ok" if all(v["cycle"] > 0 for v in sources.values()) else "warming_up",
        "sources": sources,
        "geocoder": pipeline.resolver.stats(),
        "notifications": pipeline.dispatcher.stats(),
    }


@router.post("/refresh/{source}")
async def refresh(source: str, pipeline: Pipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    if source not in SOURCES:
        bad_request("unknown_source", f"source must be one of {', '.join(SOURCES)}")
    report = await pipeline.run_cycle(source)
    return report.model_dump()
