"""Batch job queue: state, sequential processing, backoff and recovery."""

from .assets import RefAssetStore
from .backends import (
    CancellationToken,
    GenerationBackend,
    HistoryRecorder,
    KeyValueStore,
    OutputStorage,
)
from .errors import (
    CancelledError,
    GenerationFailure,
    ImageBatchError,
    PermanentBackendError,
    RateLimitedError,
    TransientBackendError,
)
from .eta import EtaEstimator, format_duration
from .events import EventBus, EventKind, QueueEvent
from .manager import QueueManager
from .models import (
    EtaEstimate,
    GeneratedImage,
    Job,
    JobStatus,
    QueueState,
    QueueStats,
    RefImage,
)
from .persistence import QueueSnapshotStore, compute_snapshot_hash
from .retry import BackoffPolicy, RetryPolicy, call_with_retry
from .sqlite_backend import InMemoryKeyValueStore, SQLiteKeyValueStore
from .worker import JobProcessor

__all__ = [
    "RefAssetStore",
    "CancellationToken",
    "GenerationBackend",
    "HistoryRecorder",
    "KeyValueStore",
    "OutputStorage",
    "CancelledError",
    "GenerationFailure",
    "ImageBatchError",
    "PermanentBackendError",
    "RateLimitedError",
    "TransientBackendError",
    "EtaEstimator",
    "format_duration",
    "EventBus",
    "EventKind",
    "QueueEvent",
    "QueueManager",
    "EtaEstimate",
    "GeneratedImage",
    "Job",
    "JobStatus",
    "QueueState",
    "QueueStats",
    "RefImage",
    "QueueSnapshotStore",
    "compute_snapshot_hash",
    "BackoffPolicy",
    "RetryPolicy",
    "call_with_retry",
    "InMemoryKeyValueStore",
    "SQLiteKeyValueStore",
    "JobProcessor",
]
