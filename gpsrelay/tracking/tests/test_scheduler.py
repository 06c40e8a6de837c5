"""Tests for the SyncScheduler state machine."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from gpsrelay.tracking.base import Disposition
from gpsrelay.tracking.sample_store import SampleStore
from gpsrelay.tracking.storage import MemoryStore
from gpsrelay.tracking.sync.scheduler import RETRY_STATE_KEY, RetryState, SyncScheduler, SyncState
from gpsrelay.tracking.tests.conftest import (
    FakeClock,
    FakeTimer,
    StubUploader,
    make_samples,
)


def build(
    storage: MemoryStore,
    clock: FakeClock,
    timer: FakeTimer,
    uploader: StubUploader,
    samples=(),
    max_stored: int = 100,
    batch_size: int = 1,
) -> tuple[SampleStore, SyncScheduler]:
    store = SampleStore(storage, max_stored=max_stored)
    for s in samples:
        store.append(s)
    scheduler = SyncScheduler(
        store,
        uploader,
        storage,
        retry_interval_seconds=600,
        batch_size=batch_size,
        clock=clock,
        timer=timer,
    )
    return store, scheduler


# ---------------------------------------------------------------------------
# Draining
# ---------------------------------------------------------------------------


class TestDrain:
    def test_initial_state_is_stopped(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        _, scheduler = build(storage, clock, timer, StubUploader())
        assert scheduler.state is SyncState.STOPPED
        assert not scheduler.is_active

    @pytest.mark.asyncio
    async def test_start_with_empty_queue_stays_idle(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader()
        _, scheduler = build(storage, clock, timer, uploader)
        scheduler.start()
        await scheduler.join()
        assert scheduler.state is SyncState.IDLE
        assert uploader.sent == []

    @pytest.mark.asyncio
    async def test_drains_all_samples_oldest_first(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        samples = make_samples(4)
        uploader = StubUploader()
        store, scheduler = build(storage, clock, timer, uploader, samples)

        scheduler.start()
        await scheduler.join()

        assert uploader.sent == samples
        assert len(store) == 0
        assert scheduler.state is SyncState.IDLE
        assert scheduler.uploaded_count == 4

    @pytest.mark.asyncio
    async def test_kick_after_append_drains_new_sample(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader()
        store, scheduler = build(storage, clock, timer, uploader)
        scheduler.start()
        await scheduler.join()

        sample = make_samples(1)[0]
        store.append(sample)
        scheduler.kick()
        assert scheduler.state is SyncState.DRAINING
        await scheduler.join()
        assert uploader.sent == [sample]

    @pytest.mark.asyncio
    async def test_kick_while_stopped_does_nothing(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader()
        _, scheduler = build(storage, clock, timer, uploader, make_samples(2))
        scheduler.kick()
        await asyncio.sleep(0)
        assert uploader.sent == []
        assert scheduler.state is SyncState.STOPPED

    @pytest.mark.asyncio
    async def test_append_during_drain_is_picked_up(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b = make_samples(2)
        uploader = StubUploader()
        uploader.gate = asyncio.Event()
        store, scheduler = build(storage, clock, timer, uploader, [a])

        scheduler.start()
        await asyncio.sleep(0)
        store.append(b)
        scheduler.kick()  # already draining: no second task
        uploader.gate.set()
        await scheduler.join()

        assert uploader.sent == [a, b]
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_batches_use_send_batch(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        samples = make_samples(5)
        uploader = StubUploader()
        store, scheduler = build(storage, clock, timer, uploader, samples, batch_size=2)

        scheduler.start()
        await scheduler.join()

        assert uploader.batches == [samples[0:2], samples[2:4], samples[4:5]]
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_sample_evicted_in_flight_does_not_drop_unsent(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b, c = make_samples(3)
        uploader = StubUploader()
        uploader.gate = asyncio.Event()
        store, scheduler = build(storage, clock, timer, uploader, [a, b], max_stored=2)

        scheduler.start()
        await asyncio.sleep(0)  # sending a
        store.append(c)  # evicts a
        uploader.gate.set()
        await scheduler.join()

        assert uploader.sent == [a, b, c]
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_batch_evicted_in_flight_is_not_resent(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b, c = make_samples(3)
        uploader = StubUploader()
        uploader.gate = asyncio.Event()
        store, scheduler = build(
            storage, clock, timer, uploader, [a, b], max_stored=2, batch_size=2
        )

        scheduler.start()
        await asyncio.sleep(0)  # sending [a, b]
        store.append(c)  # evicts a
        uploader.gate.set()
        await scheduler.join()

        assert uploader.batches == [[a, b], [c]]
        assert uploader.sent.count(b) == 1
        assert len(store) == 0


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_once_then_all_removed_in_order(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b, c = make_samples(3)
        uploader = StubUploader([Disposition.retryable("network")])
        store, scheduler = build(storage, clock, timer, uploader, [a, b, c])

        scheduler.start()
        await scheduler.join()

        assert scheduler.state is SyncState.WAITING_RETRY
        assert store.all() == [a, b, c]
        deadline = clock.now() + timedelta(seconds=600)
        assert scheduler.next_attempt_at == deadline
        assert storage.get(RETRY_STATE_KEY) == {"next_attempt_at": deadline.isoformat()}
        assert [h.delay for h in timer.pending] == [600]

        clock.advance(600)
        timer.fire()
        await scheduler.join()

        assert uploader.sent == [a, a, b, c]
        assert len(store) == 0
        assert scheduler.state is SyncState.IDLE
        assert scheduler.retry_count == 1
        assert storage.get(RETRY_STATE_KEY) is None
        assert scheduler.next_attempt_at is None

    @pytest.mark.asyncio
    async def test_kick_while_waiting_does_not_send(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader([Disposition.retryable("http 503", 503)])
        _, scheduler = build(storage, clock, timer, uploader, make_samples(2))
        scheduler.start()
        await scheduler.join()

        scheduler.kick()
        await scheduler.join()
        assert len(uploader.sent) == 1
        assert scheduler.state is SyncState.WAITING_RETRY

    @pytest.mark.asyncio
    async def test_repeated_failures_keep_a_single_timer(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader([Disposition.retryable("network")] * 3)
        store, scheduler = build(storage, clock, timer, uploader, make_samples(1))
        scheduler.start()
        await scheduler.join()

        for _ in range(3):
            assert len(timer.pending) == 1
            clock.advance(600)
            timer.fire()
            await scheduler.join()

        assert scheduler.retry_count == 3
        assert len(store) == 0
        assert timer.pending == []

    @pytest.mark.asyncio
    async def test_fatal_failure_drops_poison_sample(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b, c = make_samples(3)
        uploader = StubUploader([Disposition.success(), Disposition.fatal("rejected 422", 422)])
        store, scheduler = build(storage, clock, timer, uploader, [a, b, c])

        scheduler.start()
        await scheduler.join()

        assert uploader.sent == [a, b, c]
        assert len(store) == 0
        assert scheduler.dropped_count == 1
        assert scheduler.uploaded_count == 2
        assert scheduler.state is SyncState.IDLE
        assert "rejected 422" in scheduler.last_error

    @pytest.mark.asyncio
    async def test_uploader_exception_becomes_retry(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader([RuntimeError("boom")])
        store, scheduler = build(storage, clock, timer, uploader, make_samples(1))

        scheduler.start()
        await scheduler.join()

        assert scheduler.state is SyncState.WAITING_RETRY
        assert len(store) == 1
        assert "boom" in scheduler.last_error


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_while_waiting_cancels_timer(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        samples = make_samples(3)
        uploader = StubUploader([Disposition.retryable("network")])
        store, scheduler = build(storage, clock, timer, uploader, samples)
        scheduler.start()
        await scheduler.join()
        handle = timer.pending[0]

        scheduler.stop()

        assert handle.cancelled
        assert timer.pending == []
        assert scheduler.state is SyncState.STOPPED
        assert storage.get(RETRY_STATE_KEY) is None
        assert store.all() == samples

        clock.advance(3600)
        scheduler.resume()
        scheduler.kick()
        await scheduler.join()
        assert len(uploader.sent) == 1

        scheduler.start()
        await scheduler.join()
        assert uploader.sent == [samples[0]] + samples
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_in_flight_success_after_stop_still_removes(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b = make_samples(2)
        uploader = StubUploader()
        uploader.gate = asyncio.Event()
        store, scheduler = build(storage, clock, timer, uploader, [a, b])

        scheduler.start()
        await asyncio.sleep(0)
        scheduler.stop()
        uploader.gate.set()
        await scheduler.join()

        assert uploader.sent == [a]
        assert store.all() == [b]
        assert scheduler.state is SyncState.STOPPED

    @pytest.mark.asyncio
    async def test_in_flight_failure_after_stop_does_not_rearm(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader([Disposition.retryable("network")])
        uploader.gate = asyncio.Event()
        store, scheduler = build(storage, clock, timer, uploader, make_samples(2))

        scheduler.start()
        await asyncio.sleep(0)
        scheduler.stop()
        uploader.gate.set()
        await scheduler.join()

        assert timer.handles == []
        assert storage.get(RETRY_STATE_KEY) is None
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_restart_during_in_flight_send_keeps_one_drainer(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        samples = make_samples(3)
        uploader = StubUploader()
        uploader.gate = asyncio.Event()
        store, scheduler = build(storage, clock, timer, uploader, samples)

        scheduler.start()
        await asyncio.sleep(0)
        scheduler.stop()
        scheduler.start()
        uploader.gate.set()
        await scheduler.join()

        assert uploader.sent == samples
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_flush_on_stop_makes_one_pass_without_rearming(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b, c = make_samples(3)
        uploader = StubUploader(
            [Disposition.retryable("network"), Disposition.success(), Disposition.retryable("network")]
        )
        store, scheduler = build(storage, clock, timer, uploader, [a, b, c])
        scheduler.start()
        await scheduler.join()

        scheduler.stop(flush=True)
        await scheduler.join()

        assert uploader.sent == [a, a, b]
        assert store.all() == [b, c]
        assert timer.pending == []
        assert storage.get(RETRY_STATE_KEY) is None
        assert scheduler.state is SyncState.STOPPED

    @pytest.mark.asyncio
    async def test_flush_on_stop_during_in_flight_send_drains_queue(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        samples = make_samples(3)
        uploader = StubUploader()
        uploader.gate = asyncio.Event()
        store, scheduler = build(storage, clock, timer, uploader, samples)
        scheduler.start()
        await asyncio.sleep(0)  # sending the first sample

        scheduler.stop(flush=True)
        uploader.gate.set()
        await scheduler.join()

        assert uploader.sent == samples
        assert len(store) == 0
        assert scheduler.state is SyncState.STOPPED
        assert timer.pending == []

    @pytest.mark.asyncio
    async def test_flush_request_ends_with_the_pass(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        a, b = make_samples(2)
        uploader = StubUploader([Disposition.retryable("network")] * 2)
        store, scheduler = build(storage, clock, timer, uploader, [a])
        scheduler.start()
        await scheduler.join()
        scheduler.stop(flush=True)
        await scheduler.join()

        # a later plain stop does not inherit the flush
        scheduler.start()
        await scheduler.join()
        store.append(b)
        scheduler.stop()
        await scheduler.join()
        assert uploader.sent == [a, a, a]

    @pytest.mark.asyncio
    async def test_suspend_keeps_persisted_deadline(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader([Disposition.retryable("network")])
        _, scheduler = build(storage, clock, timer, uploader, make_samples(1))
        scheduler.start()
        await scheduler.join()

        scheduler.suspend()
        assert timer.pending == []
        assert storage.get(RETRY_STATE_KEY) is not None
        assert scheduler.state is SyncState.STOPPED


# ---------------------------------------------------------------------------
# Restart / resume
# ---------------------------------------------------------------------------


class TestRestore:
    @pytest.mark.asyncio
    async def test_past_deadline_drains_immediately(
        self, clock: FakeClock, timer: FakeTimer
    ) -> None:
        past = clock.now() - timedelta(seconds=5)
        storage = MemoryStore({RETRY_STATE_KEY: RetryState(past).to_json()})
        uploader = StubUploader()
        store, scheduler = build(storage, clock, timer, uploader, make_samples(2))

        scheduler.start()
        assert scheduler.state is SyncState.DRAINING
        await scheduler.join()

        assert len(uploader.sent) == 2
        assert timer.handles == []
        assert storage.get(RETRY_STATE_KEY) is None

    @pytest.mark.asyncio
    async def test_future_deadline_rearms_for_remaining_time(
        self, clock: FakeClock, timer: FakeTimer
    ) -> None:
        future = clock.now() + timedelta(seconds=250)
        storage = MemoryStore({RETRY_STATE_KEY: RetryState(future).to_json()})
        uploader = StubUploader()
        store, scheduler = build(storage, clock, timer, uploader, make_samples(2))

        scheduler.start()
        await scheduler.join()

        assert scheduler.state is SyncState.WAITING_RETRY
        assert scheduler.next_attempt_at == future
        assert [h.delay for h in timer.pending] == [250]
        assert uploader.sent == []

        clock.advance(250)
        timer.fire()
        await scheduler.join()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_state_survives_new_scheduler_instance(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        samples = make_samples(2)
        _, first = build(storage, clock, timer, StubUploader([Disposition.retryable("network")]), samples)
        first.start()
        await first.join()
        first.suspend()

        clock.advance(601)
        uploader = StubUploader()
        store = SampleStore(storage, max_stored=100)
        second = SyncScheduler(store, uploader, storage, clock=clock, timer=FakeTimer())
        second.start()
        await second.join()

        assert uploader.sent == samples
        assert len(store) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("corrupt", ["tomorrow", {"next_attempt_at": "soon"}, {}, [1]])
    async def test_corrupt_retry_state_is_discarded(
        self, clock: FakeClock, timer: FakeTimer, corrupt: object
    ) -> None:
        storage = MemoryStore({RETRY_STATE_KEY: corrupt})
        uploader = StubUploader()
        store, scheduler = build(storage, clock, timer, uploader, make_samples(1))

        scheduler.start()
        await scheduler.join()

        assert storage.get(RETRY_STATE_KEY) is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_resume_drains_when_timer_missed_deadline(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        """A host woken after the deadline drains even though the timer never fired."""
        uploader = StubUploader([Disposition.retryable("network")])
        store, scheduler = build(storage, clock, timer, uploader, make_samples(1))
        scheduler.start()
        await scheduler.join()
        handle = timer.pending[0]

        clock.advance(700)
        scheduler.resume()
        await scheduler.join()

        assert handle.cancelled
        assert len(store) == 0
        assert scheduler.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_resume_before_deadline_rearms(
        self, storage: MemoryStore, clock: FakeClock, timer: FakeTimer
    ) -> None:
        uploader = StubUploader([Disposition.retryable("network")])
        _, scheduler = build(storage, clock, timer, uploader, make_samples(1))
        scheduler.start()
        await scheduler.join()

        clock.advance(100)
        scheduler.resume()
        assert [h.delay for h in timer.pending] == [500]
        assert len(uploader.sent) == 1
