"""Wiring helpers that build a ready-to-use QueueManager.

Usage:
    config = resolve_config()
    manager = open_queue("queue.db", config)      # restores previous state
    manager.enqueue(prompts, 2, config.generation, batch_name="cats")
    manager.start()
    manager.wait()
"""

from pathlib import Path
from typing import List, Optional

import structlog

from .gemini_client import GeminiImageBackend
from .history import SQLiteHistory
from .models import ImageBatchConfig
from .output_storage import FilesystemOutputStorage
from .queue import GenerationBackend, QueueManager, SQLiteKeyValueStore

logger = structlog.get_logger(__name__)


def open_queue(
    db_path: str,
    config: ImageBatchConfig,
    backend: Optional[GenerationBackend] = None,
    background: bool = True,
    restore: bool = True,
) -> QueueManager:
    """Create the queue manager for a database file.

    Args:
        db_path: SQLite file holding the snapshot, reference images and history
        config: Resolved application configuration
        backend: Generation backend (default: Gemini over HTTP)
        background: Run the processor on its own thread
        restore: Load and repair any previously persisted state
    """
    store = SQLiteKeyValueStore(db_path)
    output_storage = None
    if config.output.directory:
        output_storage = FilesystemOutputStorage(
            config.output.directory, max_length=config.output.filename_prefix_length
        )

    manager = QueueManager(
        store,
        backend or GeminiImageBackend(config.backend),
        queue_config=config.queue,
        output_storage=output_storage,
        history=SQLiteHistory(db_path),
        background=background,
    )
    if restore and manager.restore():
        stats = manager.get_stats()
        logger.info("session_restored", db_path=db_path, pending=stats.pending, total=stats.total)
    return manager


def read_prompts_file(path: str) -> List[str]:
    """One prompt per line; blank lines and '#' comments are ignored."""
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.lstrip().startswith("#")]
