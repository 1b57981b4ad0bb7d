"""Rolling job-duration statistics and remaining-time estimates."""

from typing import List

from .models import EtaEstimate

DEFAULT_DURATION_MS = 30000


def format_duration(ms: int) -> str:
    """Format milliseconds as '45s', '3m 20s' or '1h 5m'."""
    total_s = max(0, int(round(ms / 1000)))
    if total_s < 60:
        return f"{total_s}s"
    minutes, seconds = divmod(total_s, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


class EtaEstimator:
    """Averages the most recent successful job durations.

    The history list is owned by ``QueueState.generation_times`` so it is
    persisted with the snapshot; the estimator only trims and reads it.
    """

    def __init__(
        self,
        history_size: int = 20,
        window: int = 10,
        default_ms: int = DEFAULT_DURATION_MS,
        low_confidence_samples: int = 3,
    ):
        self.history_size = history_size
        self.window = window
        self.default_ms = default_ms
        self.low_confidence_samples = low_confidence_samples

    def record(self, times: List[int], duration_ms: int) -> None:
        """Append a duration in place, keeping only the most recent entries."""
        times.append(max(0, int(duration_ms)))
        if len(times) > self.history_size:
            del times[: len(times) - self.history_size]

    def average(self, times: List[int]) -> int:
        # Short window so the estimate follows model/resolution changes quickly
        if not times:
            return self.default_ms
        recent = times[-self.window:]
        return int(round(sum(recent) / len(recent)))

    def estimate(self, times: List[int], remaining_jobs: int, delay_between_ms: int) -> EtaEstimate:
        """Estimate remaining time for ``remaining_jobs`` (pending + in progress)."""
        remaining_jobs = max(0, remaining_jobs)
        avg = self.average(times)
        remaining_ms = remaining_jobs * avg + max(0, remaining_jobs - 1) * delay_between_ms
        return EtaEstimate(
            remaining_ms=remaining_ms,
            text=format_duration(remaining_ms),
            low_confidence=len(times) < self.low_confidence_samples,
            sample_count=len(times),
            average_ms=avg,
        )
