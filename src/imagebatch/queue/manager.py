"""QueueManager: the single owner of batch queue state.

All caller-facing operations (enqueue, start/pause/resume/cancel, per-job
actions, persistence, stats) go through one instance. State mutation is
serialized by a reentrant lock; the JobProcessor runs the loop and shares
the lock.
"""

import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ..models import GenerationConfig, QueueConfig
from .assets import RefAssetStore
from .backends import (
    CancellationToken,
    GenerationBackend,
    HistoryRecorder,
    KeyValueStore,
    OutputStorage,
)
from .eta import EtaEstimator
from .events import EventBus, EventKind, Listener, QueueEvent
from .models import EtaEstimate, Job, JobStatus, QueueState, QueueStats, RefImage, new_group_id
from .persistence import QueueSnapshotStore, hydrate_ref_images, repair_state
from .retry import BackoffPolicy
from .worker import JobProcessor, Sleeper, token_sleep

logger = structlog.get_logger(__name__)

SKIPPED_ERROR = "Skipped by user"
CANCELLED_BY_USER_ERROR = "Cancelled by user"


class QueueManager:
    """Batch job queue with durable state and a single sequential worker.

    Args:
        store: Durable key-value store for the snapshot and reference images
        backend: Image generation backend
        queue_config: Limits, delays and ETA settings
        output_storage: Optional destination for generated images
        history: Optional history recorder
        background: Run the processor on its own thread (False = inline)
        clock: Source of timestamps
        sleep: Sleeper used for inter-job and backoff delays
    """

    def __init__(
        self,
        store: KeyValueStore,
        backend: GenerationBackend,
        queue_config: Optional[QueueConfig] = None,
        output_storage: Optional[OutputStorage] = None,
        history: Optional[HistoryRecorder] = None,
        background: bool = True,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Sleeper = token_sleep,
    ):
        self.config = queue_config or QueueConfig()
        self.background = background
        self._clock = clock
        self._lock = threading.RLock()
        self._state = QueueState(delay_between_ms=self.config.default_delay_ms)
        self._bus = EventBus()
        self._assets = RefAssetStore(store)
        self._snapshots = QueueSnapshotStore(store)
        self._eta = EtaEstimator(
            history_size=self.config.eta_history_size,
            window=self.config.eta_window,
            default_ms=self.config.eta_default_ms,
            low_confidence_samples=self.config.eta_low_confidence_samples,
        )
        self._processor = JobProcessor(
            self,
            backend,
            output_storage=output_storage,
            history=history,
            backoff=BackoffPolicy(max_delay_ms=self.config.max_delay_ms),
            sleep=sleep,
        )
        self._run_token: Optional[CancellationToken] = None
        self._worker_token: Optional[CancellationToken] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Subscriptions

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a progress listener; returns an unsubscribe callable."""
        return self._bus.subscribe(listener)

    # ------------------------------------------------------------------
    # Queue store operations

    def enqueue(
        self,
        prompts: Sequence[str],
        variations_per_prompt: int,
        config: GenerationConfig,
        ref_images: Optional[Sequence[RefImage]] = None,
        batch_name: Optional[str] = None,
    ) -> List[Job]:
        """Create one job per prompt variation.

        Each job gets its own deep copy of ``ref_images``. Creation stops at
        the queue limit; jobs created up to that point are kept and a
        ``limit_reached`` notice is emitted.

        Returns:
            Copies of the created jobs
        """
        max_variations = self.config.max_variations_per_prompt
        if not 1 <= variations_per_prompt <= max_variations:
            raise ValueError(
                f"variations_per_prompt must be between 1 and {max_variations}, "
                f"got {variations_per_prompt}"
            )
        ref_images = list(ref_images or [])
        batch_name = (batch_name or "").strip() or None

        with self._lock:
            created: List[Job] = []
            limit_hit = False
            now = self._clock()

            for prompt in prompts:
                prompt = prompt.strip()
                if not prompt:
                    continue
                group_id = new_group_id()
                for v in range(variations_per_prompt):
                    if len(self._state.jobs) + len(created) >= self.config.max_jobs:
                        limit_hit = True
                        break
                    created.append(
                        Job(
                            prompt=prompt,
                            variation_index=v,
                            total_variations=variations_per_prompt,
                            group_id=group_id,
                            created_at=now,
                            config=config.model_copy(deep=True),
                            ref_images=[img.model_copy(deep=True) for img in ref_images],
                            batch_name=batch_name,
                        )
                    )
                if limit_hit:
                    break

            self._assets.save_many({job.id: job.ref_images for job in created})
            self._state.jobs.extend(created)
            self._persist_locked()

            logger.info(
                "jobs_enqueued",
                count=len(created),
                prompts=len(prompts),
                variations=variations_per_prompt,
                ref_count=len(ref_images),
            )
            if limit_hit:
                message = f"Queue limit reached ({self.config.max_jobs})"
                logger.warning("queue_limit_reached", max_jobs=self.config.max_jobs)
                self._emit(EventKind.LIMIT_REACHED, message=message)
            self._emit(EventKind.STATE_CHANGED, message=f"Added {len(created)} jobs")
            return [job.model_copy(deep=True) for job in created]

    def remove(self, job_id: str) -> bool:
        """Remove a pending job; no-op for any other status."""
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            self._state.jobs.remove(job)
            self._assets.delete(job_id)
            self._persist_locked()
            self._emit(EventKind.STATE_CHANGED, job_id=job_id, message="Removed")
            return True

    def skip(self, job_id: str) -> bool:
        """Cancel a pending job without removing it; its assets are kept for retry."""
        with self._lock:
            job = self._find(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False
            job.status = JobStatus.CANCELLED
            job.error = SKIPPED_ERROR
            job.completed_at = self._clock()
            self._persist_locked()
            self._emit(EventKind.JOB_CANCELLED, job_id=job_id, message=SKIPPED_ERROR)
            return True

    def retry(self, job_id: str, autostart: bool = True, background: Optional[bool] = None) -> bool:
        """Send a failed or cancelled job back to pending.

        Missing reference images are reloaded from the asset store first.
        If no run is active and ``autostart`` is set, processing starts.
        """
        with self._lock:
            job = self._find(job_id)
            if job is None or not job.is_retryable:
                return False
            if not job.ref_images:
                job.ref_images = self._assets.load(job_id)
            job.status = JobStatus.PENDING
            job.error = None
            job.started_at = None
            job.completed_at = None
            job.output_ref = None
            self._persist_locked()
            self._emit(EventKind.STATE_CHANGED, job_id=job_id, message="Retrying")
            idle = not self._state.is_running

        if idle and autostart:
            self.start(background=background)
        return True

    def retry_failed(self, autostart: bool = True, background: Optional[bool] = None) -> int:
        """Retry every failed job; returns how many were re-queued."""
        with self._lock:
            failed_ids = [j.id for j in self._state.jobs if j.status == JobStatus.FAILED]
        count = sum(1 for job_id in failed_ids if self.retry(job_id, autostart=False))
        if count and autostart and not self.is_running:
            self.start(background=background)
        return count

    def clear(self) -> None:
        """Cancel any run, drop every job, reset counters and purge all assets.

        Destructive and irreversible; callers confirm with the user first.
        """
        self.cancel()
        with self._lock:
            self._state.jobs = []
            self._state.completed_count = 0
            self._state.failed_count = 0
            self._state.generation_times = []
            self._state.started_at = None
            purged = self._assets.purge_all()
            self._persist_locked()
            logger.info("queue_cleared", assets_purged=purged)
            self._emit(EventKind.CLEARED, message="Queue cleared")

    def set_delay(self, ms: int) -> None:
        """Override the inter-job delay (clamped to the backoff cap)."""
        if ms < 0:
            raise ValueError(f"delay must be >= 0, got {ms}")
        with self._lock:
            self._state.delay_between_ms = min(int(ms), self.config.max_delay_ms)
            self._persist_locked()
            self._emit(EventKind.STATE_CHANGED, message=f"Delay set to {ms}ms")

    def reset_delay(self) -> None:
        """Undo rate-limit backoff by restoring the configured default delay."""
        self.set_delay(self.config.default_delay_ms)

    def apply_config_override(self, overrides: Dict[str, Any]) -> int:
        """Merge fields into the config of every pending job.

        Raises:
            ValueError: Unknown field or invalid value (no job is modified)

        Returns:
            Number of jobs updated
        """
        GenerationConfig().merge_overrides(overrides)
        with self._lock:
            pending = [j for j in self._state.jobs if j.status == JobStatus.PENDING]
            for job in pending:
                job.config = job.config.merge_overrides(overrides)
            if pending:
                self._persist_locked()
                self._emit(
                    EventKind.STATE_CHANGED,
                    message=f"Updated settings for {len(pending)} pending jobs",
                )
            logger.info("config_override_applied", jobs=len(pending), fields=sorted(overrides))
            return len(pending)

    # ------------------------------------------------------------------
    # Run control

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def is_paused(self) -> bool:
        return self._state.is_paused

    def start(self, background: Optional[bool] = None) -> bool:
        """Begin processing pending jobs.

        A paused run is resumed instead. Returns False when already running
        or when nothing is pending.
        """
        with self._lock:
            state = self._state
            resume_instead = state.is_running and state.is_paused
            if state.is_running and not resume_instead:
                return False
        if resume_instead:
            return self.resume(background=background)

        with self._lock:
            state = self._state
            if state.is_running:
                return False
            if self._next_pending() is None:
                self._emit(EventKind.NOTICE, message="No pending items in queue")
                return False

            state.is_running = True
            state.is_paused = False
            state.started_at = self._clock()
            self._run_token = CancellationToken()
            self._persist_locked()
            self._emit(EventKind.STATE_CHANGED, message="Queue started")
            logger.info("queue_started", pending=self.get_stats().pending)
            token = self._claim_worker()

        self._launch(token, background)
        return True

    def pause(self) -> bool:
        """Stop dequeuing after the in-flight job finishes."""
        with self._lock:
            if not self._state.is_running or self._state.is_paused:
                return False
            self._state.is_paused = True
            self._persist_locked()
            self._emit(EventKind.PAUSED, message="Queue paused")
            logger.info("queue_paused")
            return True

    def resume(self, background: Optional[bool] = None) -> bool:
        """Continue a paused run with the same loop."""
        with self._lock:
            if not self._state.is_running or not self._state.is_paused:
                return False
            self._state.is_paused = False
            self._persist_locked()
            self._emit(EventKind.RESUMED, message="Queue resumed")
            logger.info("queue_resumed")
            token = self._run_token
            if token is not None and not token.is_cancelled and self._worker_token is token:
                # Loop is still finishing its in-flight job and will carry on
                return True
            # Fresh token so an exiting loop cannot release the new one
            self._run_token = CancellationToken()
            token = self._claim_worker()

        self._launch(token, background)
        return True

    def cancel(self) -> None:
        """Abort the in-flight job and end the run."""
        with self._lock:
            if self._run_token is not None:
                self._run_token.cancel()
            cancelled = 0
            for job in self._state.jobs:
                if job.status == JobStatus.GENERATING:
                    job.status = JobStatus.CANCELLED
                    job.error = CANCELLED_BY_USER_ERROR
                    job.completed_at = self._clock()
                    cancelled += 1
            was_running = self._state.is_running
            self._state.is_running = False
            self._state.is_paused = False
            self._persist_locked()
            if was_running or cancelled:
                logger.info("queue_cancelled", jobs_cancelled=cancelled)
                self._emit(EventKind.CANCELLED, message="Queue cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the background worker exits; returns True if it did."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _claim_worker(self) -> CancellationToken:
        self._worker_token = self._run_token
        return self._run_token

    def _launch(self, token: CancellationToken, background: Optional[bool]) -> None:
        if background is None:
            background = self.background
        if background:
            self._thread = self._processor.spawn(token)
        else:
            self._processor.run(token)

    def _release_worker(self, token: CancellationToken) -> None:
        with self._lock:
            if self._worker_token is token:
                self._worker_token = None

    # ------------------------------------------------------------------
    # Queries

    def get_state(self) -> QueueState:
        """Deep copy of the current state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._find(job_id)
            return job.model_copy(deep=True) if job else None

    def get_stats(self) -> QueueStats:
        with self._lock:
            state = self._state
            counts = {status: 0 for status in JobStatus}
            for job in state.jobs:
                counts[JobStatus(job.status)] += 1
            total = len(state.jobs)
            return QueueStats(
                total=total,
                pending=counts[JobStatus.PENDING],
                in_progress=counts[JobStatus.GENERATING],
                completed=state.completed_count,
                failed=state.failed_count,
                cancelled=counts[JobStatus.CANCELLED],
                percent_complete=round(state.completed_count / total * 100) if total else 0,
                is_running=state.is_running,
                is_paused=state.is_paused,
                delay_between_ms=state.delay_between_ms,
            )

    def get_eta(self) -> EtaEstimate:
        with self._lock:
            stats = self.get_stats()
            return self._eta.estimate(
                self._state.generation_times,
                stats.pending + stats.in_progress,
                self._state.delay_between_ms,
            )

    def has_resumable(self) -> bool:
        """True if pending jobs are waiting (e.g. after a restore)."""
        with self._lock:
            return self._next_pending() is not None

    # ------------------------------------------------------------------
    # Persistence

    def persist(self) -> bool:
        with self._lock:
            return self._persist_locked()

    def restore(self) -> bool:
        """Load the persisted snapshot and repair it.

        Interrupted jobs return to pending, a previously active run comes
        back paused, and retryable jobs get their reference images back.

        Returns:
            True if a snapshot was found

        Raises:
            RuntimeError: If a run is active or a job is still in flight
        """
        with self._lock:
            if self._state.is_running and not self._state.is_paused:
                raise RuntimeError("Cannot restore while the queue is running")
            in_flight = any(j.status == JobStatus.GENERATING for j in self._state.jobs)
            if self._worker_token is not None or in_flight:
                raise RuntimeError("Cannot restore while a job is in flight")
            state = self._snapshots.load()
            if state is None:
                return False
            reset = repair_state(state, self.config.max_delay_ms, self.config.eta_history_size)
            hydrated = hydrate_ref_images(state, self._assets)
            self._state = state
            self._run_token = None
            self._persist_locked()
            logger.info(
                "queue_restored",
                jobs=len(state.jobs),
                interrupted_reset=reset,
                refs_hydrated=hydrated,
                paused=state.is_paused,
            )
            if self._next_pending() is not None:
                self._emit(
                    EventKind.NOTICE, message="Previous queue found. Resume to continue."
                )
            else:
                self._emit(EventKind.STATE_CHANGED, message="Queue restored")
            return True

    # ------------------------------------------------------------------
    # Internals shared with JobProcessor (call with the lock held)

    def _find(self, job_id: str) -> Optional[Job]:
        return next((j for j in self._state.jobs if j.id == job_id), None)

    def _next_pending(self) -> Optional[Job]:
        # List order is creation order; requeued jobs never move
        return next((j for j in self._state.jobs if j.status == JobStatus.PENDING), None)

    def _persist_locked(self) -> bool:
        try:
            return self._snapshots.persist(self._state)
        except Exception as e:
            logger.error("persist_failed", error=str(e))
            return False

    def _emit(
        self, kind: EventKind, job_id: Optional[str] = None, message: Optional[str] = None
    ) -> None:
        self._bus.emit(
            QueueEvent(kind=kind, stats=self.get_stats(), job_id=job_id, message=message)
        )

    def _summary(self) -> str:
        completed = self._state.completed_count
        failed = self._state.failed_count
        if failed == 0:
            return f"Queue complete! {completed} images generated"
        return f"Queue complete: {completed} success, {failed} failed"
