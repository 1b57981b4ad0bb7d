"""Filesystem output storage for generated images."""

import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import structlog

from .queue.backends import OutputStorage
from .queue.models import GeneratedImage

logger = structlog.get_logger(__name__)

_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


def make_snippet(text: str, max_length: int = 40, fallback: str = "image") -> str:
    """Filesystem-safe lower-case snippet of the start of ``text``."""
    snippet = text[:max_length].strip().lower()
    snippet = _INVALID_CHARS.sub("", snippet)
    snippet = re.sub(r"\s+", "_", snippet)
    snippet = re.sub(r"_+", "_", snippet).strip("_")
    return snippet or fallback


def generate_filename(
    prompt: str,
    variation_index: int = 0,
    batch_name: Optional[str] = None,
    mime_type: str = "image/png",
    timestamp: Optional[datetime] = None,
    max_length: int = 40,
) -> str:
    """Build '[batch_]<snippet>_<timestamp>[_vN].<ext>'.

    The variation suffix is only added for the second variation onwards.
    """
    stamp = (timestamp or datetime.now()).strftime("%Y-%m-%dT%H-%M-%S")
    variation = f"_v{variation_index + 1}" if variation_index > 0 else ""
    prefix = f"{make_snippet(batch_name, max_length, fallback='batch')}_" if batch_name else ""
    ext = EXTENSIONS.get(mime_type, "png")
    return f"{prefix}{make_snippet(prompt, max_length)}_{stamp}{variation}.{ext}"


class FilesystemOutputStorage(OutputStorage):
    """Writes images into one directory and returns the filename."""

    def __init__(
        self,
        directory: str,
        max_length: int = 40,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.directory = Path(directory)
        self.max_length = max_length
        self._clock = clock

    def save(
        self,
        image: GeneratedImage,
        prompt: str,
        variation_index: int,
        batch_name: Optional[str] = None,
    ) -> str:
        self.directory.mkdir(parents=True, exist_ok=True)
        filename = generate_filename(
            prompt,
            variation_index,
            batch_name=batch_name,
            mime_type=image.mime_type,
            timestamp=self._clock(),
            max_length=self.max_length,
        )
        path = self._unique_path(self.directory / filename)
        path.write_bytes(image.data)
        logger.debug("output_saved", path=str(path), size=len(image.data))
        return path.name

    @staticmethod
    def _unique_path(path: Path) -> Path:
        candidate = path
        n = 2
        while candidate.exists():
            candidate = path.with_name(f"{path.stem}-{n}{path.suffix}")
            n += 1
        return candidate
