"""Host-facing façade over the sync pipeline.

The host (location provider, HTTP endpoint, test script) only talks to
``Tracker``: it starts and stops tracking, hands over samples with
``record()`` and reads back ``is_active()`` / ``pending_count()``.  Upload
and retry happen in the background on the event loop the tracker was
started on.

Each Tracker constructs and owns its own token cache, queue and scheduler;
two trackers share nothing unless they are given the same storage.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime

import httpx

from gpsrelay.tracking.auth import TokenProvider
from gpsrelay.tracking.base import Clock, Sample, SystemClock, Timer
from gpsrelay.tracking.config_loader import TrackerConfig
from gpsrelay.tracking.sample_store import SampleStore
from gpsrelay.tracking.storage import KeyValueStore
from gpsrelay.tracking.sync.scheduler import SyncScheduler, SyncState, Uploader
from gpsrelay.tracking.upload import UploadClient

logger = logging.getLogger("gpsrelay.tracking.tracker")


@dataclass
class TrackerStatus:
    """Aggregate status exposed to the host.

    Attributes:
        is_active:       True while tracking is enabled.
        pending_count:   Samples waiting to be uploaded.
        sync_state:      Current scheduler state.
        next_attempt_at: UTC deadline of the armed retry, if any.
        retry_count:     Retries scheduled since the tracker was created.
        uploaded_count:  Samples uploaded since the tracker was created.
        dropped_count:   Samples dropped after a fatal rejection.
        last_error:      Description of the most recent failed attempt.
    """

    is_active: bool
    pending_count: int
    sync_state: SyncState
    next_attempt_at: datetime | None = None
    retry_count: int = 0
    uploaded_count: int = 0
    dropped_count: int = 0
    last_error: str | None = None


class Tracker:
    """Record samples and relay them to the ingestion API.

    Usage::

        tracker = Tracker(config, JsonFileStore(path))
        tracker.start()                 # inside the event loop
        tracker.record(Sample(59.43, 24.75, captured_at))
        ...
        tracker.stop()
        await tracker.aclose()
    """

    def __init__(
        self,
        config: TrackerConfig,
        storage: KeyValueStore,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        timer: Timer | None = None,
        uploader: Uploader | None = None,
    ) -> None:
        """Build the pipeline for one device.

        Args:
            config:      Validated tracker configuration.
            storage:     Durable key/value storage for queue and retry state.
            http_client: Optional httpx client; one is created (and closed) otherwise.
            clock:       Wall clock (injectable for tests).
            timer:       Deferred-call primitive (injectable for tests).
            uploader:    Replaces the OAuth upload client entirely (tests, custom sinks).
        """
        self._config = config
        self._clock = clock or SystemClock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._record_lock = threading.Lock()

        self.token_provider: TokenProvider | None = None
        self._http_client: httpx.AsyncClient | None = None
        self._owns_http_client = False
        if uploader is None:
            if http_client is None:
                http_client = httpx.AsyncClient(timeout=config.http_timeout_seconds)
                self._owns_http_client = True
            self._http_client = http_client
            self.token_provider = TokenProvider(
                config.token_url,
                config.client_id,
                config.client_secret,
                http_client=http_client,
                clock=self._clock,
                leeway_seconds=config.token_leeway_seconds,
            )
            uploader = UploadClient(
                config.upload_url,
                self.token_provider,
                bulk_upload_url=config.bulk_upload_url,
                http_client=http_client,
                fatal_on_client_error=config.fatal_on_client_error,
            )

        self.store = SampleStore(storage, max_stored=config.max_stored)
        self.scheduler = SyncScheduler(
            self.store,
            uploader,
            storage,
            retry_interval_seconds=config.retry_interval_seconds,
            batch_size=config.batch_size,
            clock=self._clock,
            timer=timer,
        )
        # Uploaded samples leave the queue, so the interval check keeps its own reference
        last = self.store.last()
        self._last_captured_at: datetime | None = last.captured_at if last else None

    # ------------------------------------------------------------------
    # Host API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Enable tracking.  Must be called from the event loop thread."""
        self._loop = asyncio.get_running_loop()
        if self.scheduler.is_active:
            return
        self.scheduler.start()
        logger.info("Tracking started (%d sample(s) pending)", self.pending_count())

    def stop(self) -> None:
        """Disable tracking; queued samples stay on disk."""
        if not self.scheduler.is_active:
            return
        self.scheduler.stop(flush=self._config.flush_on_stop)
        logger.info("Tracking stopped (%d sample(s) pending)", self.pending_count())

    def resume(self) -> None:
        """Background wake-up hook: re-arm the retry schedule from storage."""
        self.scheduler.resume()

    def record(self, sample: Sample) -> bool:
        """Queue a sample for upload.  Thread-safe and non-blocking.

        Returns:
            False if tracking is off or the sample came too soon after the
            previous one; True if it was queued.
        """
        if not self.is_active():
            logger.debug("Ignoring sample while tracking is stopped")
            return False

        with self._record_lock:
            interval = self._config.min_sample_interval_seconds
            if interval > 0 and self._last_captured_at is not None:
                elapsed = (self._clock.now() - self._last_captured_at).total_seconds()
                if elapsed < interval:
                    logger.debug("Skipping sample %.1fs after the previous one", elapsed)
                    return False
            self.store.append(sample)
            self._last_captured_at = sample.captured_at

        self._notify()
        return True

    def is_active(self) -> bool:
        return self.scheduler.is_active

    def pending_count(self) -> int:
        return len(self.store)

    def samples(self) -> list[Sample]:
        """Queued samples, oldest first (display only)."""
        return self.store.all()

    def status(self) -> TrackerStatus:
        scheduler = self.scheduler
        return TrackerStatus(
            is_active=scheduler.is_active,
            pending_count=len(self.store),
            sync_state=scheduler.state,
            next_attempt_at=scheduler.next_attempt_at,
            retry_count=scheduler.retry_count,
            uploaded_count=scheduler.uploaded_count,
            dropped_count=scheduler.dropped_count,
            last_error=scheduler.last_error,
        )

    async def aclose(self) -> None:
        """Shut down for process exit, keeping the retry deadline for the next start."""
        self.scheduler.suspend()
        await self.scheduler.join()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.scheduler.kick)
