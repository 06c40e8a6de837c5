"""gpsrelay service — FastAPI application entry point.

Run locally:
    uvicorn gpsrelay.main:create_app --factory --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from gpsrelay.config import Settings, get_settings
from gpsrelay.routers import health, tracking
from gpsrelay.tracking.config_loader import load_tracker_config
from gpsrelay.tracking.storage import JsonFileStore
from gpsrelay.tracking.tracker import Tracker

logger = logging.getLogger("gpsrelay")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def build_tracker(settings: Settings) -> Tracker:
    """Construct the Tracker described by the settings."""
    config = load_tracker_config(
        settings.tracker_config_path, overrides=settings.tracker_overrides()
    )
    return Tracker(config, JsonFileStore(settings.state_file))


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting %s v%s [%s]",
        settings.app_name,
        settings.app_version,
        settings.environment,
    )
    tracker = build_tracker(settings)
    app.state.tracker = tracker
    if settings.autostart:
        tracker.start()
    yield
    await tracker.aclose()
    logger.info("%s shut down (%d sample(s) pending)", settings.app_name, tracker.pending_count())


# ---------- App factory ----------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="gpsrelay",
        description=(
            "Offline-durable relay for device location samples. Queues readings "
            "locally and uploads them to the ingestion API with retry."
        ),
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ---------- Health check (always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(tracking.router, prefix="/api/v1")

    return app
