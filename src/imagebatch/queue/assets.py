"""Per-job reference image storage, kept out of the queue snapshot.

Lifecycle of an entry (keyed by job id):
- written on enqueue
- deleted on successful completion
- retained on skip/cancel/failure so a later retry can reload it
- bulk-loaded on restore for retryable jobs
- purged on queue clear
"""

import json
from typing import Dict, Iterable, List

import structlog

from .backends import KeyValueStore
from .models import RefImage

logger = structlog.get_logger(__name__)

KEY_PREFIX = "ref_assets:"


def _key(job_id: str) -> str:
    return f"{KEY_PREFIX}{job_id}"


def _encode(images: List[RefImage]) -> str:
    return json.dumps([img.model_dump(mode="json") for img in images])


def _decode(raw: str) -> List[RefImage]:
    return [RefImage.model_validate(item) for item in json.loads(raw)]


class RefAssetStore:
    """Keyed blob persistence for job reference images."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def save(self, job_id: str, images: List[RefImage]) -> None:
        self.save_many({job_id: images})

    def save_many(self, images_by_job: Dict[str, List[RefImage]]) -> None:
        """Write entries for jobs that have images; empty lists are not stored."""
        items = {_key(job_id): _encode(images) for job_id, images in images_by_job.items() if images}
        self.store.set_many(items)

    def load(self, job_id: str) -> List[RefImage]:
        return self.load_many([job_id]).get(job_id, [])

    def load_many(self, job_ids: Iterable[str]) -> Dict[str, List[RefImage]]:
        """Return images for the job ids that have an entry.

        Undecodable entries are logged and skipped.
        """
        job_ids = list(job_ids)
        raw = self.store.get_many(_key(j) for j in job_ids)
        loaded: Dict[str, List[RefImage]] = {}
        for job_id in job_ids:
            value = raw.get(_key(job_id))
            if value is None:
                continue
            try:
                loaded[job_id] = _decode(value)
            except ValueError as e:
                logger.warning("ref_assets_corrupt", job_id=job_id, error=str(e))
        return loaded

    def delete(self, job_id: str) -> None:
        self.delete_many([job_id])

    def delete_many(self, job_ids: Iterable[str]) -> None:
        self.store.delete_many(_key(j) for j in job_ids)

    def purge_all(self) -> int:
        """Delete every entry, including orphans; returns count removed."""
        keys = self.store.keys(KEY_PREFIX)
        self.store.delete_many(keys)
        return len(keys)

    def job_ids(self) -> List[str]:
        return [k[len(KEY_PREFIX):] for k in self.store.keys(KEY_PREFIX)]
