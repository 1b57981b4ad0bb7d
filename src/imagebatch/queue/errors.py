"""Typed failure outcomes of a job.

The processor classifies backend failures by exception type only; message
text is for display and never inspected.
"""

from typing import Optional


class ImageBatchError(Exception):
    """Base class for all queue and backend errors."""


class CancelledError(ImageBatchError):
    """The run was cancelled while this call was in flight."""

    def __init__(self, message: str = "Cancelled"):
        super().__init__(message)


class RateLimitedError(ImageBatchError):
    """The backend throttled the caller.

    Args:
        message: Human readable reason
        retry_after_s: Suggested wait reported by the backend, if any
    """

    def __init__(self, message: str = "Rate limited", retry_after_s: Optional[float] = None):
        super().__init__(message)
        self.retry_after_s = retry_after_s


class TransientBackendError(ImageBatchError):
    """Network or server error worth retrying inside the backend."""


class GenerationFailure(ImageBatchError):
    """Any other failure of a job (backend, storage or history)."""


class PermanentBackendError(GenerationFailure):
    """Malformed request or authentication failure; never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
