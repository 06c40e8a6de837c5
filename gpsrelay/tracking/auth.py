"""OAuth2 client-credentials token provider for the ingestion API.

Endpoint:
    POST {base_url}/connect/token
    Content-Type: application/x-www-form-urlencoded
    grant_type=client_credentials&client_id=...&client_secret=...

    200 -> {"access_token": "...", "expires_in": 3600, ...}

The token is cached in memory until it expires.  Concurrent callers that
find the cache empty share a single in-flight request.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import httpx

from gpsrelay.tracking.base import Clock, SystemClock, Token
from gpsrelay.tracking.errors import AuthError

logger = logging.getLogger("gpsrelay.tracking.auth")


class TokenProvider:
    """Obtain and cache a bearer token for the ingestion API."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        timeout: float = 30.0,
        leeway_seconds: float = 0,
    ) -> None:
        """Initialize the provider.

        Args:
            token_url:      Full URL of the token endpoint.
            client_id:      OAuth2 client ID.
            client_secret:  OAuth2 client secret.
            http_client:    Optional shared httpx client (also used for testing).
            clock:          Source of "now" for expiry checks.
            timeout:        Request timeout when no client is injected.
            leeway_seconds: Treat the token as expired this many seconds early.
        """
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._clock = clock or SystemClock()
        self._timeout = timeout
        self._leeway_seconds = leeway_seconds
        self._token: Token | None = None
        self._inflight: asyncio.Future[Token] | None = None
        self.fetch_count = 0

    @property
    def cached_token(self) -> Token | None:
        return self._token

    async def get_token(self) -> Token:
        """Return a valid token, fetching a new one if needed.

        Raises:
            AuthError: If the token request fails for any reason.
        """
        token = self._token
        if token is not None and token.is_valid(self._clock.now(), self._leeway_seconds):
            return token

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch_token())
            self._inflight.add_done_callback(self._clear_inflight)
        return await asyncio.shield(self._inflight)

    def invalidate(self) -> None:
        """Drop the cached token so the next call fetches a fresh one."""
        if self._token is not None:
            logger.info("Invalidating cached access token")
        self._token = None

    def _clear_inflight(self, future: asyncio.Future) -> None:
        if self._inflight is future:
            self._inflight = None
        # Mark the exception retrieved even if every awaiting caller was cancelled
        if not future.cancelled():
            future.exception()

    async def _fetch_token(self) -> Token:
        self.fetch_count += 1
        logger.info("Requesting access token from %s", self._token_url)

        form = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        try:
            if self._http_client:
                response = await self._http_client.post(self._token_url, data=form)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._token_url, data=form)
        except httpx.HTTPError as exc:
            raise AuthError(f"Token request failed: {exc.__class__.__name__}: {exc}") from exc

        if response.status_code != 200:
            raise AuthError(f"Token endpoint returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise AuthError("Token endpoint returned a non-JSON body") from exc

        if not isinstance(data, dict):
            raise AuthError("Token response is not a JSON object")
        access_token = data.get("access_token")
        expires_in = data.get("expires_in")
        if not isinstance(access_token, str) or not access_token:
            raise AuthError("Token response is missing 'access_token'")
        if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in <= 0:
            raise AuthError(f"Token response has invalid 'expires_in': {expires_in!r}")

        token = Token(
            value=access_token,
            expires_at=self._clock.now() + timedelta(seconds=expires_in),
        )
        self._token = token
        logger.info("Obtained access token, expires at %s", token.expires_at.isoformat())
        return token
