"""gpsrelay offline-durable sync pipeline.

This package queues location samples on local storage and relays them to
the ingestion API, retrying on a fixed interval while the network or the
API is unavailable.

Subpackages:
    sync/ — Retry-driven scheduler that drains the queue

Core modules:
    base          — Sample, Token and Disposition models; clock/timer seams
    errors        — Error taxonomy (AuthError, TransportError, ...)
    config_loader — Load/validate tracker_config.yaml
    storage       — Durable key/value storage (JSON file, in-memory)
    sample_store  — Bounded FIFO of samples awaiting upload
    auth          — OAuth2 client-credentials TokenProvider
    upload        — UploadClient returning Dispositions
    tracker       — Host-facing Tracker façade
"""

from gpsrelay.tracking.base import Disposition, DispositionKind, Sample, Token
from gpsrelay.tracking.config_loader import TrackerConfig, load_tracker_config
from gpsrelay.tracking.storage import JsonFileStore, MemoryStore
from gpsrelay.tracking.sync.scheduler import SyncState
from gpsrelay.tracking.tracker import Tracker, TrackerStatus

__all__ = [
    "Sample",
    "Token",
    "Disposition",
    "DispositionKind",
    "TrackerConfig",
    "load_tracker_config",
    "JsonFileStore",
    "MemoryStore",
    "SyncState",
    "Tracker",
    "TrackerStatus",
]
