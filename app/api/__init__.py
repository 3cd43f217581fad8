from __future__ import annotations

from fastapi import APIRouter

from .health import router as health_router
from .incidents import router as incidents_router
from .warnings import router as warnings_router
from .notifications import router as notifications_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(incidents_router)
api_router.include_router(warnings_router)
api_router.include_router(notifications_router)
