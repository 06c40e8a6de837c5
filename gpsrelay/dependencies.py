"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from gpsrelay.config import Settings, get_settings
from gpsrelay.tracking.tracker import Tracker


async def get_tracker(request: Request) -> Tracker:
    """Return the Tracker created by the application lifespan."""
    tracker: Tracker | None = getattr(request.app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracker is not initialised")
    return tracker


def get_app_settings(request: Request) -> Settings:
    """Settings the app was created with, falling back to the environment."""
    settings: Settings | None = getattr(request.app.state, "settings", None)
    return settings or get_settings()


# Annotated shortcuts for route signatures
CurrentTracker = Annotated[Tracker, Depends(get_tracker)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
