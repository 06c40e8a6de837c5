"""Upload client for the GPS ingestion API.

Endpoints used:
    POST /api/GPSEntries        — one sample per request
    POST /api/GPSEntries/bulk   — JSON array of samples

Every outcome is reported as a Disposition; ``send`` never raises.  By
default any non-2xx status is retryable.  With ``fatal_on_client_error``
enabled, 4xx rejections other than 401/408/429 are treated as permanent so
the scheduler can drop the offending sample instead of retrying it forever.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from gpsrelay.tracking.auth import TokenProvider
from gpsrelay.tracking.base import Disposition, Sample
from gpsrelay.tracking.errors import AuthError, ServerRejected, TransportError

logger = logging.getLogger("gpsrelay.tracking.upload")

# Client errors that can succeed on a later attempt
_RETRYABLE_CLIENT_ERRORS = frozenset({401, 408, 429})


class UploadClient:
    """Send samples to the ingestion API with a bearer token."""

    def __init__(
        self,
        upload_url: str,
        token_provider: TokenProvider,
        bulk_upload_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        fatal_on_client_error: bool = False,
    ) -> None:
        """Initialize the upload client.

        Args:
            upload_url:            Full URL of the single-sample endpoint.
            token_provider:        Source of bearer tokens.
            bulk_upload_url:       Full URL of the batch endpoint.
            http_client:           Optional shared httpx client (also used for testing).
            timeout:               Request timeout when no client is injected.
            fatal_on_client_error: Classify most 4xx responses as FatalFailure.
        """
        self._upload_url = upload_url
        self._bulk_upload_url = bulk_upload_url
        self._token_provider = token_provider
        self._http_client = http_client
        self._timeout = timeout
        self._fatal_on_client_error = fatal_on_client_error

    async def send(self, sample: Sample) -> Disposition:
        """Upload one sample."""
        return await self._deliver(self._upload_url, sample.to_payload(), count=1)

    async def send_batch(self, samples: Sequence[Sample]) -> Disposition:
        """Upload several samples in one request to the bulk endpoint."""
        if not samples:
            return Disposition.success()
        if self._bulk_upload_url is None:
            raise ValueError("send_batch requires bulk_upload_url")
        payload = [s.to_payload() for s in samples]
        return await self._deliver(self._bulk_upload_url, payload, count=len(samples))

    async def _deliver(self, url: str, payload: Any, count: int) -> Disposition:
        try:
            token = await self._token_provider.get_token()
        except AuthError as exc:
            logger.warning("Upload deferred, could not obtain token: %s", exc)
            return Disposition.retryable("auth")

        try:
            status_code = await self._post(url, payload, token.value)
        except TransportError as exc:
            logger.warning("Upload of %d sample(s) failed: %s", count, exc)
            return Disposition.retryable("network")
        except ServerRejected as exc:
            return self._classify_rejection(exc, count)

        logger.debug("Uploaded %d sample(s) to %s (HTTP %d)", count, url, status_code)
        return Disposition.success(status_code)

    def _classify_rejection(self, exc: ServerRejected, count: int) -> Disposition:
        status = exc.status_code
        if status == 401:
            # The token may have been revoked before its advertised expiry
            self._token_provider.invalidate()

        if self._fatal_on_client_error and 400 <= status < 500 and status not in _RETRYABLE_CLIENT_ERRORS:
            logger.error("Upload of %d sample(s) rejected with HTTP %d; dropping", count, status)
            return Disposition.fatal(f"rejected {status}", status)

        logger.warning("Upload of %d sample(s) got HTTP %d; will retry", count, status)
        return Disposition.retryable(f"http {status}", status)

    async def _post(self, url: str, payload: Any, access_token: str) -> int:
        """POST a JSON payload with the bearer token.

        Returns:
            The 2xx status code.

        Raises:
            TransportError: On network failure or timeout.
            ServerRejected: On non-2xx responses.
        """
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        try:
            if self._http_client:
                response = await self._http_client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"{exc.__class__.__name__}: {exc}") from exc

        if not response.is_success:
            raise ServerRejected(response.status_code)
        return response.status_code
