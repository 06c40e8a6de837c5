"""Retry-driven sync scheduler for the local sample queue.

Drains the SampleStore through the UploadClient, oldest first, one request
in flight at a time:

1. Peek the oldest sample (or batch) in the queue
2. Upload it
3. On success remove it and continue; stop when the queue is empty
4. On a retryable failure persist ``next_attempt_at`` and arm one timer
5. On a fatal failure drop the sample and continue

States::

    STOPPED --start--> IDLE --kick (queue non-empty)--> DRAINING
    DRAINING --success, queue empty--> IDLE
    DRAINING --retryable failure--> WAITING_RETRY --timer--> DRAINING
    any --stop--> STOPPED

The retry deadline is persisted so a restarted process resumes the schedule:
a deadline in the past drains immediately, one in the future re-arms the
timer for the remaining time.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol, Sequence

from gpsrelay.tracking.base import (
    Clock,
    Disposition,
    DispositionKind,
    LoopTimer,
    Sample,
    SystemClock,
    Timer,
    TimerHandle,
    parse_timestamp,
)
from gpsrelay.tracking.sample_store import SampleStore
from gpsrelay.tracking.storage import KeyValueStore

logger = logging.getLogger("gpsrelay.tracking.sync.scheduler")

RETRY_STATE_KEY = "retry_state"


class SyncState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    WAITING_RETRY = "waiting_retry"
    STOPPED = "stopped"


class Uploader(Protocol):
    async def send(self, sample: Sample) -> Disposition: ...

    async def send_batch(self, samples: Sequence[Sample]) -> Disposition: ...


@dataclass
class RetryState:
    """Persisted deadline of the pending retry.

    Stored as JSON under the ``retry_state`` key.
    """

    next_attempt_at: datetime

    def to_json(self) -> dict:
        return {"next_attempt_at": self.next_attempt_at.isoformat()}

    @classmethod
    def from_json(cls, data: dict) -> "RetryState":
        if not isinstance(data, dict):
            raise ValueError(f"retry state must be an object, got {type(data).__name__}")
        return cls(next_attempt_at=parse_timestamp(data.get("next_attempt_at")))


class SyncScheduler:
    """Drain the sample queue and schedule retries after failures.

    Usage::

        scheduler = SyncScheduler(store, upload_client, storage)
        scheduler.start()      # from inside the event loop
        scheduler.kick()       # after appending a sample
        scheduler.stop()
    """

    def __init__(
        self,
        store: SampleStore,
        uploader: Uploader,
        storage: KeyValueStore,
        retry_interval_seconds: float = 600,
        batch_size: int = 1,
        clock: Clock | None = None,
        timer: Timer | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store:                  Queue to drain.
            uploader:               Sends samples and returns a Disposition.
            storage:                Where the retry deadline is persisted.
            retry_interval_seconds: Fixed wait after a retryable failure.
            batch_size:             Samples per upload (1 = single-sample endpoint).
            clock:                  Wall clock for deadlines.
            timer:                  Cancellable deferred-call primitive.
        """
        self._store = store
        self._uploader = uploader
        self._storage = storage
        self._retry_interval = retry_interval_seconds
        self._batch_size = max(1, batch_size)
        self._clock = clock or SystemClock()
        self._timer = timer or LoopTimer()

        self._state = SyncState.STOPPED
        self._timer_handle: TimerHandle | None = None
        self._next_attempt_at: datetime | None = None
        self._drain_task: asyncio.Task | None = None
        self._flushing = False

        self.retry_count = 0
        self.uploaded_count = 0
        self.dropped_count = 0
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is not SyncState.STOPPED

    @property
    def next_attempt_at(self) -> datetime | None:
        return self._next_attempt_at if self._state is SyncState.WAITING_RETRY else None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Enable syncing and pick up any persisted retry schedule."""
        if self._state is not SyncState.STOPPED:
            return
        self._flushing = False
        self._set_state(SyncState.IDLE)
        self.resume()

    def stop(self, flush: bool = False) -> None:
        """Disable syncing, cancel the retry timer and forget the retry deadline.

        Queued samples are kept.  An upload already in flight completes; its
        success still removes the sample, its failure does not re-arm.

        Args:
            flush: Make one best-effort drain pass that never schedules a retry.
        """
        if self._state is SyncState.STOPPED:
            return
        self._cancel_timer()
        self._clear_retry_state()
        self._set_state(SyncState.STOPPED)
        self._flushing = flush

        if not flush or not len(self._store):
            return
        if self._drain_running():
            logger.info("Flushing on stop; the running drain continues through the queue")
            return
        logger.info("Flushing %d queued sample(s) on stop", len(self._store))
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def suspend(self) -> None:
        """Stop without clearing the persisted deadline (process shutdown)."""
        if self._state is SyncState.STOPPED:
            return
        self._cancel_timer()
        self._flushing = False
        self._set_state(SyncState.STOPPED)

    def kick(self) -> None:
        """Start draining if idle and there is something to send."""
        if self._state is SyncState.IDLE and len(self._store):
            self._begin_drain()

    def resume(self) -> None:
        """Re-arm from the persisted retry deadline, or drain if idle.

        This is the hook a host calls when it is woken in the background.
        """
        if self._state in (SyncState.STOPPED, SyncState.DRAINING):
            return

        retry = self._load_retry_state()
        if retry is None:
            if self._state is SyncState.WAITING_RETRY:
                # Deadline vanished from storage; retry now rather than stall
                self._begin_drain()
            else:
                self.kick()
            return

        remaining = (retry.next_attempt_at - self._clock.now()).total_seconds()
        if remaining <= 0:
            logger.info("Retry deadline %s has passed; draining now", retry.next_attempt_at.isoformat())
            self._begin_drain()
        else:
            logger.info("Re-arming retry in %.0fs", remaining)
            self._arm_timer(remaining, retry.next_attempt_at)

    async def join(self) -> None:
        """Wait until no drain task is running."""
        while self._drain_task is not None:
            await self._drain_task

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    def _drain_running(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def _begin_drain(self) -> None:
        self._cancel_timer()
        self._set_state(SyncState.DRAINING)
        if self._drain_running():
            # The in-flight loop re-checks the state after its current send
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def _keep_draining(self) -> bool:
        if self._state is SyncState.DRAINING:
            return True
        return self._flushing and self._state is SyncState.STOPPED

    async def _drain(self) -> None:
        try:
            while self._keep_draining():
                batch = self._store.peek_batch(self._batch_size)
                if not batch:
                    if self._state is SyncState.DRAINING:
                        self._clear_retry_state()
                        self._set_state(SyncState.IDLE)
                    logger.debug("Sample queue drained")
                    return

                disposition = await self._upload(batch)

                if disposition.is_success:
                    self.uploaded_count += self._store.remove_sent(batch)
                    continue

                self.last_error = str(disposition)
                if disposition.kind is DispositionKind.FATAL:
                    dropped = self._store.remove_sent(batch)
                    self.dropped_count += dropped
                    logger.error("Dropped %d sample(s) after %s", dropped, disposition)
                    continue

                if self._state is SyncState.DRAINING:
                    self._schedule_retry(disposition)
                return
        except Exception as exc:
            logger.exception("Drain loop failed")
            self.last_error = f"{exc.__class__.__name__}: {exc}"
            if self._state is SyncState.DRAINING:
                self._schedule_retry(None)
        finally:
            if self._drain_task is asyncio.current_task():
                self._drain_task = None
                self._flushing = False

    async def _upload(self, batch: list[Sample]) -> Disposition:
        if self._batch_size == 1:
            return await self._uploader.send(batch[0])
        return await self._uploader.send_batch(batch)

    # ------------------------------------------------------------------
    # Retry timer and persisted state
    # ------------------------------------------------------------------

    def _schedule_retry(self, disposition: Disposition | None) -> None:
        deadline = self._clock.now() + timedelta(seconds=self._retry_interval)
        self._storage.set(RETRY_STATE_KEY, RetryState(deadline).to_json())
        self.retry_count += 1
        logger.warning(
            "Upload failed (%s); %d sample(s) pending, next attempt at %s",
            disposition or self.last_error,
            len(self._store),
            deadline.isoformat(),
        )
        self._arm_timer(self._retry_interval, deadline)

    def _arm_timer(self, delay: float, deadline: datetime) -> None:
        self._cancel_timer()
        self._timer_handle = self._timer.call_later(delay, self._on_retry_due)
        self._next_attempt_at = deadline
        self._set_state(SyncState.WAITING_RETRY)

    def _cancel_timer(self) -> None:
        if self._timer_handle is not None:
            self._timer_handle.cancel()
            self._timer_handle = None
        self._next_attempt_at = None

    def _on_retry_due(self) -> None:
        self._timer_handle = None
        if self._state is not SyncState.WAITING_RETRY:
            return
        logger.info("Retry timer fired; resuming upload")
        self._begin_drain()

    def _load_retry_state(self) -> RetryState | None:
        raw = self._storage.get(RETRY_STATE_KEY)
        if raw is None:
            return None
        try:
            return RetryState.from_json(raw)
        except ValueError as exc:
            logger.warning("Discarding unreadable retry state %r: %s", raw, exc)
            self._storage.delete(RETRY_STATE_KEY)
            return None

    def _clear_retry_state(self) -> None:
        if self._storage.get(RETRY_STATE_KEY) is not None:
            self._storage.delete(RETRY_STATE_KEY)

    def _set_state(self, state: SyncState) -> None:
        if state is not self._state:
            logger.debug("Sync state %s -> %s", self._state.value, state.value)
            self._state = state
