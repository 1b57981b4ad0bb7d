"""Abstract collaborator interfaces consumed by the queue core.

This module defines the contracts for image generation, output storage,
history recording and durable key-value storage, plus the cancellation
token shared between the processor and the generation backend. Concrete
implementations live outside the core (HTTP client, filesystem, SQLite)
so the queue engine can be exercised with in-memory fakes.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .errors import CancelledError

if TYPE_CHECKING:
    from ..models import GenerationConfig
    from .models import GeneratedImage, RefImage


class CancellationToken:
    """Cooperative cancellation flag shared with in-flight backend calls.

    Backed by a ``threading.Event`` so waits on it wake immediately when
    the run is cancelled.
    """

    def __init__(self):
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout_s: float) -> bool:
        """Sleep up to ``timeout_s``; returns True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, timeout_s))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError()


class GenerationBackend(ABC):
    """Abstract image generation service.

    Implementations must provide:
    - Typed failures: CancelledError, RateLimitedError, GenerationFailure
    - Internal bounded retry of transient network/server errors
    - Cooperative cancellation via the supplied token
    """

    @abstractmethod
    def generate(
        self,
        prompt: str,
        config: "GenerationConfig",
        ref_images: List["RefImage"],
        token: CancellationToken,
    ) -> "GeneratedImage":
        """Generate one image.

        Args:
            prompt: Prompt text
            config: Generation parameters snapshotted on the job
            ref_images: Reference images sent alongside the prompt
            token: Cancellation token checked before and between attempts

        Returns:
            GeneratedImage with raw bytes and backend metadata

        Implementation notes:
        - Raise CancelledError once the token is cancelled
        - Raise RateLimitedError (with retry_after_s if known) when throttled
        - Never retry malformed-request or authentication errors
        - Raise GenerationFailure for anything else after retries
        """
        pass


class OutputStorage(ABC):
    """Abstract destination for generated images."""

    @abstractmethod
    def save(
        self,
        image: "GeneratedImage",
        prompt: str,
        variation_index: int,
        batch_name: Optional[str] = None,
    ) -> str:
        """Persist image bytes and return an output reference.

        Args:
            image: Generated image
            prompt: Prompt the image was generated from (used for naming)
            variation_index: 0-based variation index (used for naming)
            batch_name: Optional naming prefix

        Returns:
            Output reference (filename or storage key)
        """
        pass


class HistoryRecorder(ABC):
    """Abstract history/metadata log of generated images.

    Failures are logged by the processor and never fail the job.
    """

    @abstractmethod
    def record(
        self,
        image: "GeneratedImage",
        prompt: str,
        model: str,
        output_ref: Optional[str],
        ref_images_used: List["RefImage"],
    ) -> None:
        """Append one history entry."""
        pass


class KeyValueStore(ABC):
    """Abstract durable key-value store.

    Used for the queue snapshot (one key) and for per-job reference image
    blobs (one key per job). Values are opaque strings.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return stored value or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Insert or replace a value (atomic)."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete a key (no-op if missing)."""
        pass

    @abstractmethod
    def get_many(self, keys: Iterable[str]) -> Dict[str, str]:
        """Return values for the keys that exist."""
        pass

    @abstractmethod
    def set_many(self, items: Dict[str, str]) -> None:
        """Insert or replace many values in one transaction."""
        pass

    @abstractmethod
    def delete_many(self, keys: Iterable[str]) -> None:
        """Delete many keys in one transaction."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List keys starting with prefix."""
        pass
