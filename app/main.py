# app/main.py
from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

# Load /backend/.env (main.py is /backend/app/main.py)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from app.core.settings import settings
from app.api import api_router
from app.services.scheduler import Pipeline

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Fire Incidents Backend", version="1.0.0")

# ── Compression (must be added before CORS) ──
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ──────────────────────────────────────────────────────────────
# Pipeline (scrapers, geocoder, snapshots, dispatcher)
# ──────────────────────────────────────────────────────────────

_pipeline = Pipeline.from_settings()

# ──────────────────────────────────────────────────────────────
# Dependency providers
# ──────────────────────────────────────────────────────────────

def provide_pipeline() -> Pipeline:
    return _pipeline


# ──────────────────────────────────────────────────────────────
# Dependency overrides
# ──────────────────────────────────────────────────────────────

from app.api import health as health_api
from app.api import incidents as incidents_api
from app.api import warnings as warnings_api
from app.api import notifications as notifications_api

app.dependency_overrides[health_api.get_pipeline] = provide_pipeline
app.dependency_overrides[incidents_api.get_pipeline] = provide_pipeline
app.dependency_overrides[warnings_api.get_pipeline] = provide_pipeline
app.dependency_overrides[notifications_api.get_pipeline] = provide_pipeline

# Routes
app.include_router(api_router)

# ──────────────────────────────────────────────────────────────
# Startup / shutdown
# ──────────────────────────────────────────────────────────────

@app.on_event("startup")
async def startup():
    logger.info("[app] Starting poll loops and notification dispatcher")
    await _pipeline.start()


@app.on_event("shutdown")
async def shutdown():
    logger.info("[app] Shutting down, stopping poll loops")
    try:
        await _pipeline.stop()
    except Exception as e:
        logger.warning(f"[app] Error during pipeline shutdown: {e}")
