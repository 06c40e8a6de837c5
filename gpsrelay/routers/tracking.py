"""Host-facing tracking endpoints: record samples, start/stop, status."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from gpsrelay.dependencies import CurrentTracker
from gpsrelay.models.base import ErrorDetail
from gpsrelay.models.tracking import (
    SampleAccepted,
    SampleCreate,
    SampleRead,
    TrackingStatusRead,
)
from gpsrelay.tracking.tracker import Tracker

router = APIRouter(
    prefix="/tracking",
    tags=["tracking"],
    responses={503: {"model": ErrorDetail, "description": "Tracker not initialised"}},
)
logger = logging.getLogger("gpsrelay.routers.tracking")


def _status(tracker: Tracker) -> dict:
    status = tracker.status()
    return {
        "is_active": status.is_active,
        "pending_count": status.pending_count,
        "sync_state": status.sync_state.value,
        "next_attempt_at": status.next_attempt_at,
        "retry_count": status.retry_count,
        "uploaded_count": status.uploaded_count,
        "dropped_count": status.dropped_count,
        "last_error": status.last_error,
    }


# ---------- Samples ----------

@router.post("/samples", response_model=SampleAccepted, status_code=202)
async def record_sample(tracker: CurrentTracker, body: SampleCreate) -> Any:
    accepted = tracker.record(body.to_sample())
    if not accepted:
        logger.debug("Sample at %s not queued", body.captured_at.isoformat())
    return {"accepted": accepted, "pending_count": tracker.pending_count()}


@router.get("/samples", response_model=list[SampleRead])
async def list_samples(tracker: CurrentTracker) -> Any:
    return tracker.samples()


# ---------- Lifecycle ----------

@router.post("/start", response_model=TrackingStatusRead)
async def start_tracking(tracker: CurrentTracker) -> Any:
    tracker.start()
    return _status(tracker)


@router.post("/stop", response_model=TrackingStatusRead)
async def stop_tracking(tracker: CurrentTracker) -> Any:
    tracker.stop()
    return _status(tracker)


@router.post("/resume", response_model=TrackingStatusRead)
async def resume_tracking(tracker: CurrentTracker) -> Any:
    """Wake-up hook for schedulers (cron, systemd timers) driving a suspended host."""
    tracker.resume()
    return _status(tracker)


@router.get("/status", response_model=TrackingStatusRead)
async def tracking_status(tracker: CurrentTracker) -> Any:
    return _status(tracker)
