"""Exception taxonomy for the sync pipeline.

None of these reach the host.  The upload path converts them into a
Disposition and the scheduler turns that into a retry; storage corruption
resets the affected state to empty.
"""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for all gpsrelay tracking errors."""


class AuthError(TrackerError):
    """The OAuth token request failed (non-200, malformed body, or transport)."""


class TransportError(TrackerError):
    """Network failure or timeout while talking to the ingestion API."""


class ServerRejected(TrackerError):
    """The ingestion API answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str | None = None) -> None:
        self.status_code = status_code
        super().__init__(message or f"Server rejected upload with HTTP {status_code}")


class StorageCorrupted(TrackerError):
    """Persisted local state could not be decoded."""
