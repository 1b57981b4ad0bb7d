"""Failure classification and delay computation.

Two independent layers:
- Transient retry: bounded attempts with a fixed escalating delay sequence,
  applied by the generation backend to network/server errors.
- Rate-limit backoff: queue-level. The throttled job returns to pending and
  the shared inter-job delay doubles up to a cap, slowing the whole run.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Tuple, Type, TypeVar

import structlog

from .backends import CancellationToken
from .errors import (
    CancelledError,
    GenerationFailure,
    ImageBatchError,
    RateLimitedError,
    TransientBackendError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class BackoffPolicy:
    """Queue-level reaction to throttling.

    Only exception types listed in ``requeue_errors`` send a job back to
    pending without counting a failure. Timeouts and exhausted transient
    retries arrive as GenerationFailure and are counted.
    """

    max_delay_ms: int = 60000
    min_backoff_ms: int = 1000  # doubling zero would never slow down
    requeue_errors: Tuple[Type[BaseException], ...] = (RateLimitedError,)

    def should_requeue(self, exc: BaseException) -> bool:
        return isinstance(exc, self.requeue_errors)

    def next_delay(self, current_ms: int) -> int:
        """Double the shared delay, capped at ``max_delay_ms``."""
        doubled = max(current_ms * 2, self.min_backoff_ms)
        return min(doubled, self.max_delay_ms)

    def sleep_for(self, delay_ms: int, exc: BaseException) -> int:
        """Sleep before re-evaluating the loop: the delay, or the backend's hint if longer."""
        retry_after_s = getattr(exc, "retry_after_s", None)
        if retry_after_s:
            hinted = min(int(retry_after_s * 1000), self.max_delay_ms)
            return max(delay_ms, hinted)
        return delay_ms


@dataclass
class RetryPolicy:
    """Transient-error retry used inside a generation backend."""

    max_attempts: int = 3
    delays_ms: Sequence[int] = field(default_factory=lambda: (1000, 2000, 4000))

    def delay_for(self, attempt: int) -> int:
        """Delay after failed ``attempt`` (1-based)."""
        if not self.delays_ms:
            return 0
        return self.delays_ms[min(attempt - 1, len(self.delays_ms) - 1)]

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        # Malformed request, auth, throttling and cancellation surface immediately
        return isinstance(exc, TransientBackendError)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    token: CancellationToken,
    on_retry: Optional[Callable[[int, int, ImageBatchError], None]] = None,
) -> T:
    """Call ``fn`` with bounded retries of transient errors.

    Args:
        fn: Zero-argument callable performing one attempt
        policy: Attempts and delay sequence
        token: Checked before every attempt and during waits
        on_retry: Optional callback(attempt, delay_ms, error) before waiting

    Returns:
        Result of the first successful attempt

    Raises:
        CancelledError: Token cancelled before an attempt or during a wait
        GenerationFailure: Transient errors exhausted all attempts
        Any non-retryable error raised by ``fn`` unchanged
    """
    for attempt in range(1, policy.max_attempts + 1):
        token.raise_if_cancelled()
        try:
            return fn()
        except TransientBackendError as e:
            if attempt >= policy.max_attempts:
                raise GenerationFailure(
                    f"{e} (gave up after {policy.max_attempts} attempts)"
                ) from e

            delay_ms = policy.delay_for(attempt)
            logger.warning(
                "transient_error_retrying",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_ms=delay_ms,
                error=str(e),
            )
            if on_retry:
                on_retry(attempt, delay_ms, e)
            if token.wait(delay_ms / 1000):
                raise CancelledError()

    # max_attempts >= 1, loop always returns or raises
    raise GenerationFailure("No attempts made")
