"""Bounded, durable FIFO of location samples awaiting upload.

Insertion order is upload order.  When the queue grows past ``max_stored``
the oldest samples are evicted: under sustained overflow readings are lost,
newest data wins.  State is loaded once on construction and written back
after every mutation.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable

from gpsrelay.tracking.base import Sample
from gpsrelay.tracking.errors import StorageCorrupted
from gpsrelay.tracking.storage import KeyValueStore

logger = logging.getLogger("gpsrelay.tracking.sample_store")

SAMPLES_KEY = "samples"


class SampleStore:
    """Append-only, size-bounded queue of samples.

    All mutations hold one lock, so the host thread may append while the
    drain loop removes.
    """

    def __init__(self, storage: KeyValueStore, max_stored: int = 1000) -> None:
        if max_stored < 1:
            raise ValueError(f"max_stored must be >= 1, got {max_stored}")
        self._storage = storage
        self._max_stored = max_stored
        self._lock = threading.Lock()
        self._samples: list[Sample] = self._load()

    @property
    def max_stored(self) -> int:
        return self._max_stored

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def append(self, sample: Sample) -> None:
        with self._lock:
            self._samples.append(sample)
            evicted = len(self._samples) - self._max_stored
            if evicted > 0:
                del self._samples[:evicted]
                logger.warning(
                    "Sample queue full (%d); evicted %d oldest sample(s)",
                    self._max_stored,
                    evicted,
                )
            self._persist()

    def peek_oldest(self) -> Sample | None:
        with self._lock:
            return self._samples[0] if self._samples else None

    def peek_batch(self, size: int) -> list[Sample]:
        """Return up to ``size`` of the oldest samples without removing them."""
        with self._lock:
            return self._samples[:size]

    def remove_oldest(self) -> None:
        with self._lock:
            if not self._samples:
                return
            del self._samples[0]
            self._persist()

    def remove_sent(self, sent: Iterable[Sample]) -> int:
        """Remove uploaded samples from the head of the queue.

        Sent samples evicted while their upload was in flight are no longer
        at the head; they are skipped up to the first one that still is.
        Removal then stops at the first head entry that does not match.

        Returns:
            Number of samples removed.
        """
        removed = 0
        with self._lock:
            if not self._samples:
                return 0
            sent = list(sent)
            head = self._samples[0]
            start = next((i for i, s in enumerate(sent) if s == head), len(sent))
            for sample in sent[start:]:
                if removed < len(self._samples) and self._samples[removed] == sample:
                    removed += 1
                else:
                    break
            if removed:
                del self._samples[:removed]
                self._persist()
        return removed

    def all(self) -> list[Sample]:
        """Snapshot of the queue, oldest first. For display only."""
        with self._lock:
            return list(self._samples)

    def last(self) -> Sample | None:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        self._storage.set(SAMPLES_KEY, [s.to_json() for s in self._samples])

    def _load(self) -> list[Sample]:
        raw = self._storage.get(SAMPLES_KEY)
        if raw is None:
            return []
        try:
            if not isinstance(raw, list):
                raise StorageCorrupted(f"expected a list, got {type(raw).__name__}")
            try:
                samples = [Sample.from_json(entry) for entry in raw]
            except ValueError as exc:
                raise StorageCorrupted(str(exc)) from exc
        except StorageCorrupted as exc:
            logger.warning("Persisted sample queue is corrupted (%s); starting empty", exc)
            self._storage.delete(SAMPLES_KEY)
            return []

        if len(samples) > self._max_stored:
            logger.info(
                "Trimming %d persisted samples to max_stored=%d",
                len(samples),
                self._max_stored,
            )
            samples = samples[-self._max_stored:]
            self._storage.set(SAMPLES_KEY, [s.to_json() for s in samples])

        logger.debug("Loaded %d persisted sample(s)", len(samples))
        return samples
