"""ArchiveMap: session id -> latest archive cross-reference, for recall by key."""

from __future__ import annotations

import logging
from pathlib import Path

from ..types import ArchiveRecord
from .helpers import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class ArchiveMap:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, dict]:
        data = read_json(self.path, default={})
        if not isinstance(data, dict):
            logger.warning(f"Archive map {self.path} is not an object; ignoring")
            return {}
        return data

    def get(self, session_id: str) -> dict | None:
        return self.load().get(session_id)

    def upsert(self, record: ArchiveRecord, updated_at: float) -> None:
        data = self.load()
        data[record.session_id] = {
            "source_path": record.source_path,
            "archive_path": record.archive_path,
            "projection_path": record.projection_path,
            "content_hash": record.content_hash,
            "updated_at": updated_at,
        }
        atomic_write_json(self.path, data)

    def remove_archive(self, archive_path: str) -> list[str]:
        """Drop every key pointing at ``archive_path``. Returns removed keys."""
        data = self.load()
        removed = [k for k, v in data.items() if v.get("archive_path") == archive_path]
        if removed:
            for key in removed:
                del data[key]
            atomic_write_json(self.path, data)
        return removed
