"""Queue snapshot persistence and crash recovery.

The snapshot is the queue state as JSON without reference image payloads,
stored under a single key. Writes are synchronous with state changes but
skipped when the canonical JSON is unchanged, so at most the latest
transition can be lost on a crash.
"""

import hashlib
import json
from typing import Any, Dict, Optional

import structlog
from pydantic import ValidationError

from .assets import RefAssetStore
from .backends import KeyValueStore
from .models import JobStatus, QueueState, RETRYABLE_STATUSES

logger = structlog.get_logger(__name__)

SNAPSHOT_KEY = "queue_state"


def compute_snapshot_hash(snapshot: Dict[str, Any]) -> str:
    """SHA-256 of canonical (sorted-key) JSON."""
    canonical = json.dumps(snapshot, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def repair_state(state: QueueState, max_delay_ms: int, history_size: int) -> int:
    """Fix up a restored snapshot in place.

    - jobs interrupted mid-generation go back to pending with no start time
    - a run that was active comes back paused, never silently resumed
    - paused implies running
    - delay is clamped to the cap, duration history trimmed

    Returns:
        Count of interrupted jobs reset to pending
    """
    reset = 0
    for job in state.jobs:
        if job.status == JobStatus.GENERATING:
            job.status = JobStatus.PENDING
            job.started_at = None
            reset += 1

    if state.is_running:
        state.is_paused = True
    else:
        state.is_paused = False

    state.delay_between_ms = min(state.delay_between_ms, max_delay_ms)
    if len(state.generation_times) > history_size:
        state.generation_times = state.generation_times[-history_size:]
    return reset


def hydrate_ref_images(state: QueueState, assets: RefAssetStore) -> int:
    """Reload reference images for retryable jobs that have none in memory.

    Returns:
        Count of jobs repopulated
    """
    missing = [
        job for job in state.jobs if job.status in RETRYABLE_STATUSES and not job.ref_images
    ]
    if not missing:
        return 0
    loaded = assets.load_many(job.id for job in missing)
    for job in missing:
        if job.id in loaded:
            job.ref_images = loaded[job.id]
    return sum(1 for job in missing if job.id in loaded)


class QueueSnapshotStore:
    """Reads and writes the queue snapshot in a KeyValueStore."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._last_hash: Optional[str] = None

    def persist(self, state: QueueState) -> bool:
        """Write the snapshot if it changed since the last write.

        Returns:
            True if a write happened
        """
        snapshot = state.snapshot_dict()
        digest = compute_snapshot_hash(snapshot)
        if digest == self._last_hash:
            return False
        self.store.set(SNAPSHOT_KEY, json.dumps(snapshot))
        self._last_hash = digest
        return True

    def load(self) -> Optional[QueueState]:
        """Read the raw snapshot; corrupt data is logged and ignored."""
        raw = self.store.get(SNAPSHOT_KEY)
        if raw is None:
            return None
        try:
            state = QueueState.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.error("snapshot_corrupt", error=str(e))
            return None
        self._last_hash = compute_snapshot_hash(state.snapshot_dict())
        return state

    def clear(self) -> None:
        self.store.delete(SNAPSHOT_KEY)
        self._last_hash = None
