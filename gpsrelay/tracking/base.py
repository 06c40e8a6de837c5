"""Core data models and runtime seams for the gpsrelay sync pipeline.

Every component in ``gpsrelay.tracking`` exchanges the types defined here:
the immutable ``Sample`` produced by the host, the cached OAuth ``Token``,
and the ``Disposition`` describing how an upload attempt went.  The
``Clock`` and ``Timer`` seams let tests drive time by hand.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Protocol


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as a tz-aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format as ISO-8601 UTC with millisecond precision, e.g. ``2025-05-16T08:30:00.250Z``."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string into a UTC datetime.

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp.
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"Not a timestamp string: {value!r}")
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


# ---------------------------------------------------------------------------
# Sample
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Sample:
    """One timestamped position reading.

    Attributes:
        latitude:    WGS84 latitude in degrees.
        longitude:   WGS84 longitude in degrees.
        captured_at: UTC time the fix was taken.
        accuracy:    Horizontal accuracy radius in meters, if known.
    """

    latitude: float
    longitude: float
    captured_at: datetime
    accuracy: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "latitude", float(self.latitude))
        object.__setattr__(self, "longitude", float(self.longitude))
        object.__setattr__(self, "captured_at", ensure_utc(self.captured_at))
        if self.accuracy is not None:
            object.__setattr__(self, "accuracy", float(self.accuracy))

    def to_payload(self) -> dict:
        """Wire body for the ingestion API."""
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "createdDateTime": format_timestamp(self.captured_at),
        }

    def to_json(self) -> dict:
        """Persisted form: wire field names, full-precision timestamp, plus accuracy."""
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "createdDateTime": self.captured_at.isoformat(),
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_json(cls, data: dict) -> "Sample":
        """Rebuild a sample from its persisted form.

        Raises:
            ValueError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Sample entry must be an object, got {type(data).__name__}")
        try:
            return cls(
                latitude=float(data["latitude"]),
                longitude=float(data["longitude"]),
                captured_at=parse_timestamp(data["createdDateTime"]),
                accuracy=data.get("accuracy"),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed sample entry: {data!r}") from exc


# ---------------------------------------------------------------------------
# OAuth token
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    """Bearer token returned by the client-credentials grant."""

    value: str
    expires_at: datetime

    def is_valid(self, now: datetime, leeway_seconds: float = 0) -> bool:
        return self.expires_at - timedelta(seconds=leeway_seconds) > now


# ---------------------------------------------------------------------------
# Upload outcome
# ---------------------------------------------------------------------------


class DispositionKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class Disposition:
    """Classification of one upload attempt.

    Attributes:
        kind:        SUCCESS, RETRYABLE or FATAL.
        reason:      Short machine-friendly reason ("auth", "network", "http 503").
        status_code: HTTP status of the upload response, when one was received.
    """

    kind: DispositionKind
    reason: str | None = None
    status_code: int | None = None

    @classmethod
    def success(cls, status_code: int | None = None) -> "Disposition":
        return cls(DispositionKind.SUCCESS, None, status_code)

    @classmethod
    def retryable(cls, reason: str, status_code: int | None = None) -> "Disposition":
        return cls(DispositionKind.RETRYABLE, reason, status_code)

    @classmethod
    def fatal(cls, reason: str, status_code: int | None = None) -> "Disposition":
        return cls(DispositionKind.FATAL, reason, status_code)

    @property
    def is_success(self) -> bool:
        return self.kind is DispositionKind.SUCCESS

    def __str__(self) -> str:
        status = f" (HTTP {self.status_code})" if self.status_code is not None else ""
        if self.is_success:
            return f"success{status}"
        return f"{self.kind.value}: {self.reason}{status}"


# ---------------------------------------------------------------------------
# Clock and deferred calls
# ---------------------------------------------------------------------------


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utc_now()


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopTimer:
    """Deferred calls on the running asyncio loop (monotonic, cancellable)."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(max(delay, 0.0), callback)
