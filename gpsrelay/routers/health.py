"""Liveness endpoint reporting process and tracker state."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from gpsrelay.dependencies import AppSettings

router = APIRouter(tags=["system"])


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Reports "degraded" while samples are waiting on a retry.
    """
    tracker = getattr(request.app.state, "tracker", None)
    status = tracker.status() if tracker is not None else None
    retrying = status is not None and status.next_attempt_at is not None

    return {
        "status": "degraded" if retrying else "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "tracking": status.sync_state.value if status is not None else "unavailable",
        "pending_samples": status.pending_count if status is not None else 0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
