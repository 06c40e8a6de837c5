"""Pydantic models for the tracking API: samples and tracker status."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from gpsrelay.models.base import GpsRelayBase
from gpsrelay.tracking.base import Sample, utc_now


# ---------- Samples ----------

class SampleCreate(GpsRelayBase):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    captured_at: datetime = Field(default_factory=utc_now)
    accuracy: float | None = Field(default=None, ge=0)

    def to_sample(self) -> Sample:
        return Sample(
            latitude=self.latitude,
            longitude=self.longitude,
            captured_at=self.captured_at,
            accuracy=self.accuracy,
        )


class SampleRead(GpsRelayBase):
    latitude: float
    longitude: float
    captured_at: datetime
    accuracy: float | None = None


class SampleAccepted(GpsRelayBase):
    accepted: bool
    pending_count: int


# ---------- Status ----------

class TrackingStatusRead(GpsRelayBase):
    is_active: bool
    pending_count: int
    sync_state: str
    next_attempt_at: datetime | None = None
    retry_count: int = 0
    uploaded_count: int = 0
    dropped_count: int = 0
    last_error: str | None = None
