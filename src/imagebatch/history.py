"""SQLite history of generated images (metadata only, no image bytes)."""

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlite_utils import Database

from .queue.backends import HistoryRecorder
from .queue.models import GeneratedImage, RefImage

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    prompt TEXT NOT NULL,
    model TEXT,
    output_ref TEXT,
    mime_type TEXT,
    size_bytes INTEGER,
    ref_count INTEGER DEFAULT 0,
    ref_ids TEXT,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_history_timestamp ON history(timestamp);
"""


class SQLiteHistory(HistoryRecorder):
    """Append-only history log backed by a sqlite-utils table."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.db = Database(conn)
        self._lock = threading.Lock()
        with self._lock:
            self.db.executescript(SCHEMA_SQL)

    def record(
        self,
        image: GeneratedImage,
        prompt: str,
        model: str,
        output_ref: Optional[str],
        ref_images_used: List[RefImage],
    ) -> None:
        row = {
            "timestamp": datetime.now().isoformat(),
            "prompt": prompt,
            "model": model,
            "output_ref": output_ref,
            "mime_type": image.mime_type,
            "size_bytes": len(image.data),
            "ref_count": len(ref_images_used),
            "ref_ids": json.dumps([img.id for img in ref_images_used]),
            "metadata": json.dumps(image.metadata),
        }
        with self._lock:
            self.db["history"].insert(row)

    def recent(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent entries first."""
        with self._lock:
            rows = list(
                self.db["history"].rows_where(order_by="id desc", limit=limit)
            )
        for row in rows:
            row["ref_ids"] = json.loads(row["ref_ids"]) if row.get("ref_ids") else []
            row["metadata"] = json.loads(row["metadata"]) if row.get("metadata") else {}
        return rows
