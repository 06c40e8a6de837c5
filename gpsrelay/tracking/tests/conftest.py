"""Shared fixtures, fakes and helpers for the tracking pipeline tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import httpx
import pytest

from gpsrelay.tracking.base import Disposition, Sample
from gpsrelay.tracking.config_loader import TrackerConfig
from gpsrelay.tracking.storage import MemoryStore

BASE_URL = "https://ingest.test"
T0 = datetime(2025, 5, 16, 8, 30, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


class FakeHandle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimer:
    """Records deferred calls; tests fire them explicitly."""

    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def fire(self) -> None:
        pending = self.pending
        assert len(pending) == 1, f"expected exactly one armed timer, found {len(pending)}"
        handle = pending[0]
        handle.fired = True
        handle.callback()


class StubUploader:
    """Uploader returning scripted dispositions (Success once the script runs out).

    Set ``gate`` to an asyncio.Event to hold each send until the test releases it.
    """

    def __init__(self, script: Sequence[Disposition | Exception] = ()) -> None:
        self.script = list(script)
        self.sent: list[Sample] = []
        self.batches: list[list[Sample]] = []
        self.gate: asyncio.Event | None = None

    async def send(self, sample: Sample) -> Disposition:
        self.sent.append(sample)
        return await self._next()

    async def send_batch(self, samples: Sequence[Sample]) -> Disposition:
        self.batches.append(list(samples))
        self.sent.extend(samples)
        return await self._next()

    async def _next(self) -> Disposition:
        if self.gate is not None:
            await self.gate.wait()
        if not self.script:
            return Disposition.success(201)
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_sample(index: int = 0, start: datetime = T0, accuracy: float | None = 5.0) -> Sample:
    """A sample on a short walk, one every 30 seconds."""
    return Sample(
        latitude=59.4370 + index * 0.0001,
        longitude=24.7536 + index * 0.0001,
        captured_at=start + timedelta(seconds=30 * index),
        accuracy=accuracy,
    )


def make_samples(count: int, start: datetime = T0) -> list[Sample]:
    return [make_sample(i, start) for i in range(count)]


def mock_http_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def storage() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def tracker_config() -> TrackerConfig:
    return TrackerConfig(
        base_url=BASE_URL,
        client_id="test-app",
        client_secret="test-secret",
        max_stored=100,
        retry_interval_seconds=600,
        min_sample_interval_seconds=10,
    )
