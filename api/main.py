#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
FastAPI Web Server - REST API for the Translation Memory engine.

Thin orchestration shell: app creation, middleware, router includes,
startup/shutdown events.

Usage:
    uvicorn api.main:app --host 0.0.0.0 --port 8000
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

from config.logging_config import get_logger, setup_logging
from config.settings import settings

setup_logging()
logger = get_logger(__name__)

from api.tm_router import router as tm_router
from core.tm.maintenance import MaintenanceScheduler
from core.tm.service import get_tm_service

# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Translation Memory API",
    description="Store, match and exchange reusable translations",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tm_router)

_scheduler: MaintenanceScheduler = None


@app.get("/health")
async def health():
    return {"status": "ok", "tm_enabled": settings.tm_enabled}


# =============================================================================
# Startup / Shutdown
# =============================================================================

@app.on_event("startup")
async def startup_tm_maintenance():
    """Start periodic TM cleanup."""
    global _scheduler
    if not (settings.tm_enabled and settings.tm_cleanup_scheduler_enabled):
        return
    service = get_tm_service()
    _scheduler = MaintenanceScheduler(
        service.maintenance,
        interval=timedelta(hours=settings.tm_cleanup_interval_hours),
        min_quality=settings.tm_cleanup_min_quality,
        max_age=timedelta(days=settings.tm_cleanup_max_age_days),
        include_unrated=settings.tm_cleanup_include_unrated,
    )
    _scheduler.start()


@app.on_event("shutdown")
async def shutdown_tm_maintenance():
    if _scheduler is not None:
        await _scheduler.stop()
