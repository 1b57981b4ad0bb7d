"""Sequential job processor.

This module turns pending jobs into completed/failed/cancelled ones with:
- Exactly one job in flight (the backend's rate limit is per caller)
- Strict FIFO among pending jobs, rate-limited jobs keep their position
- Queue-level backoff on throttling, shared by all later jobs
- Error classification by exception type (cancel, requeue, fail)
- Cooperative pause (finish the in-flight job) and cancel (abort it)
"""

import threading
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from .backends import CancellationToken, GenerationBackend, HistoryRecorder, OutputStorage
from .errors import CancelledError, GenerationFailure
from .events import EventKind
from .models import GeneratedImage, Job, JobStatus
from .retry import BackoffPolicy

if TYPE_CHECKING:
    from .manager import QueueManager

logger = structlog.get_logger(__name__)

Sleeper = Callable[[int, CancellationToken], None]


def token_sleep(delay_ms: int, token: CancellationToken) -> None:
    """Default sleeper: wakes early when the run is cancelled."""
    token.wait(delay_ms / 1000)


class _Outcome(Enum):
    NEXT = "next"  # job finished, move on
    REQUEUED = "requeued"  # rate limited, backoff sleep already taken
    STOP = "stop"  # run cancelled


class JobProcessor:
    """Single-worker execution loop over a QueueManager's jobs.

    The processor and its QueueManager together own the queue state; every
    mutation happens under the manager's lock, backend calls and sleeps
    happen outside it.
    """

    def __init__(
        self,
        manager: "QueueManager",
        backend: GenerationBackend,
        output_storage: Optional[OutputStorage] = None,
        history: Optional[HistoryRecorder] = None,
        backoff: Optional[BackoffPolicy] = None,
        sleep: Sleeper = token_sleep,
    ):
        self.manager = manager
        self.backend = backend
        self.output_storage = output_storage
        self.history = history
        self.backoff = backoff or BackoffPolicy()
        self.sleep = sleep

    def spawn(self, token: CancellationToken) -> threading.Thread:
        """Run the loop on a dedicated daemon thread."""
        thread = threading.Thread(
            target=self.run, args=(token,), name="imagebatch-worker", daemon=True
        )
        thread.start()
        return thread

    def run(self, token: CancellationToken) -> None:
        """Process jobs until none are pending, or the run is paused/cancelled."""
        log = logger.bind(worker=threading.current_thread().name)
        log.info("worker_started")
        try:
            while True:
                job = self._claim_next(token)
                if job is None:
                    break

                outcome = self._process(job, token)
                if outcome is _Outcome.STOP:
                    break
                if outcome is _Outcome.REQUEUED:
                    continue

                delay_ms = self._delay_before_next(token)
                if delay_ms is not None:
                    self.sleep(delay_ms, token)
        finally:
            self.manager._release_worker(token)
            log.info("worker_stopped")

    def _claim_next(self, token: CancellationToken) -> Optional[Job]:
        """Mark the earliest pending job as generating, or end the run."""
        m = self.manager
        with m._lock:
            state = m._state
            if token.is_cancelled or token is not m._run_token:
                m._release_worker(token)
                return None
            if not state.is_running or state.is_paused:
                # Release while still locked so a resume() right after starts a new loop
                m._release_worker(token)
                return None

            job = m._next_pending()
            if job is None:
                m._release_worker(token)
                state.is_running = False
                state.is_paused = False
                m._persist_locked()
                m._emit(EventKind.QUEUE_COMPLETE, message=m._summary())
                logger.info(
                    "queue_complete",
                    completed=state.completed_count,
                    failed=state.failed_count,
                )
                return None

            job.status = JobStatus.GENERATING
            job.started_at = m._clock()
            job.error = None
            m._persist_locked()
            m._emit(
                EventKind.JOB_STARTED,
                job_id=job.id,
                message=f"Generating variation {job.variation_index + 1}/{job.total_variations}",
            )
            return job

    def _process(self, job: Job, token: CancellationToken) -> _Outcome:
        log = logger.bind(job_id=job.id, variation=job.variation_index)
        prompt = job.prompt
        config = job.config
        ref_images = [img.model_copy(deep=True) for img in job.ref_images]
        log.info("job_generating", ref_count=len(ref_images), model=config.model)

        try:
            image = self.backend.generate(prompt, config, ref_images, token)
            token.raise_if_cancelled()
            output_ref = self._save_output(image, job)
            self._record_history(image, job, output_ref, ref_images)

        except CancelledError:
            self._mark_cancelled(job)
            log.info("job_cancelled", run_cancelled=token.is_cancelled)
            # A backend may cancel a single job; only a cancelled run stops the loop
            return _Outcome.STOP if token.is_cancelled else _Outcome.NEXT

        except Exception as e:
            if self.backoff.should_requeue(e):
                return self._requeue(job, e, token)
            self._mark_failed(job, e)
            log.warning("job_failed", error=str(e), error_type=type(e).__name__)
            return _Outcome.NEXT

        if not self._mark_completed(job, output_ref):
            log.info("late_result_discarded")
            return _Outcome.STOP
        log.info("job_completed", output_ref=output_ref)
        return _Outcome.NEXT

    def _save_output(self, image: GeneratedImage, job: Job) -> Optional[str]:
        if self.output_storage is None:
            return None
        try:
            return self.output_storage.save(image, job.prompt, job.variation_index, job.batch_name)
        except Exception as e:
            raise GenerationFailure(f"Saving output failed: {e}") from e

    def _record_history(self, image, job: Job, output_ref, ref_images) -> None:
        if self.history is None:
            return
        try:
            self.history.record(image, job.prompt, job.config.model, output_ref, ref_images)
        except Exception as e:
            logger.warning("history_record_failed", job_id=job.id, error=str(e))

    def _mark_completed(self, job: Job, output_ref: Optional[str]) -> bool:
        """Returns False if the job was cancelled while its result was in flight."""
        m = self.manager
        with m._lock:
            if job.status != JobStatus.GENERATING:
                return False
            state = m._state
            job.status = JobStatus.COMPLETED
            job.completed_at = m._clock()
            job.output_ref = output_ref
            state.completed_count += 1
            m._eta.record(state.generation_times, job.duration_ms or 0)
            m._assets.delete(job.id)
            m._persist_locked()
            m._emit(EventKind.JOB_COMPLETED, job_id=job.id, message=output_ref)
        return True

    def _mark_failed(self, job: Job, exc: Exception) -> None:
        m = self.manager
        with m._lock:
            if job.status != JobStatus.GENERATING:
                return
            job.status = JobStatus.FAILED
            job.error = str(exc) or type(exc).__name__
            job.completed_at = m._clock()
            m._state.failed_count += 1
            m._persist_locked()
            m._emit(EventKind.JOB_FAILED, job_id=job.id, message=job.error)

    def _mark_cancelled(self, job: Job) -> None:
        m = self.manager
        with m._lock:
            if job.status == JobStatus.GENERATING:
                job.status = JobStatus.CANCELLED
                job.error = "Cancelled"
                job.completed_at = m._clock()
                m._persist_locked()
                m._emit(EventKind.JOB_CANCELLED, job_id=job.id, message=job.error)

    def _requeue(self, job: Job, exc: Exception, token: CancellationToken) -> _Outcome:
        """Return a throttled job to pending and slow the whole run down."""
        m = self.manager
        with m._lock:
            if job.status != JobStatus.GENERATING:
                return _Outcome.STOP
            job.status = JobStatus.PENDING
            job.started_at = None
            state = m._state
            state.delay_between_ms = self.backoff.next_delay(state.delay_between_ms)
            delay_ms = state.delay_between_ms
            m._persist_locked()
            m._emit(
                EventKind.RATE_LIMITED,
                job_id=job.id,
                message=f"Rate limited. Delay increased to {delay_ms / 1000:g}s",
            )
        logger.warning("rate_limited", job_id=job.id, delay_ms=delay_ms)
        self.sleep(self.backoff.sleep_for(delay_ms, exc), token)
        return _Outcome.REQUEUED

    def _delay_before_next(self, token: CancellationToken) -> Optional[int]:
        m = self.manager
        with m._lock:
            state = m._state
            if token.is_cancelled or not state.is_running or state.is_paused:
                return None
            if m._next_pending() is None:
                return None
            return state.delay_between_ms
