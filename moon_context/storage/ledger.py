"""Ledger: append-only JSON-lines log of archive mutations.

Current archive state is never stored directly; it is rebuilt by replaying
the log in order. Lines are only ever appended.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from pathlib import Path
from typing import Callable

from ..types import LEDGER_OPS, ArchiveRecord, LedgerEntry, LedgerReadError

logger = logging.getLogger(__name__)


class Ledger:
    def __init__(self, path: Path, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self._clock = clock

    # -- reading --

    def entries(self) -> list[LedgerEntry]:
        """Parse every ledger line. A torn final line is skipped; any other bad line raises."""
        if not self.path.is_file():
            return []

        text = self.path.read_text(encoding="utf-8")
        lines = text.split("\n")
        entries: list[LedgerEntry] = []
        last_index = len(lines) - 1
        for i, line in enumerate(lines):
            if not line.strip():
                continue
            try:
                entries.append(LedgerEntry.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                if i == last_index:
                    # no trailing newline: an append was interrupted
                    logger.warning(f"Skipping torn ledger line {i + 1} in {self.path}: {e}")
                    continue
                raise LedgerReadError(
                    f"Malformed ledger line {i + 1} in {self.path}: {e}",
                    path=str(self.path),
                    line_no=i + 1,
                ) from e
        return entries

    def replay(self) -> dict[str, ArchiveRecord]:
        """Fold entries into current records keyed by content hash, in creation order."""
        records: dict[str, ArchiveRecord] = {}
        for entry in sorted(self.entries(), key=lambda e: e.seq):
            current = records.get(entry.content_hash)
            if entry.op == "created":
                if current is not None and not current.deleted:
                    continue
                records.pop(entry.content_hash, None)
                records[entry.content_hash] = _record_from_created(entry)
                continue
            if current is None:
                logger.debug(f"Ledger op {entry.op} for unknown archive {entry.content_hash[:12]}")
                continue
            if entry.op == "indexed":
                current.indexed = True
            elif entry.op == "index_failed":
                current.indexed = False
            elif entry.op == "distilled":
                current.distilled = True
                current.distilled_at = entry.at
                current.summary_path = entry.data.get("summary_path")
            elif entry.op == "deleted":
                current.deleted = True
        return records

    def records(self, include_deleted: bool = False) -> list[ArchiveRecord]:
        return [r for r in self.replay().values() if include_deleted or not r.deleted]

    def get(self, content_hash: str) -> ArchiveRecord | None:
        record = self.replay().get(content_hash)
        if record is None or record.deleted:
            return None
        return record

    def find_by_archive_path(self, archive_path: str | Path) -> ArchiveRecord | None:
        target = str(Path(archive_path).expanduser())
        for record in self.records():
            if record.archive_path == target or record.projection_path == target:
                return record
        return None

    # -- writing --

    def append(self, op: str, content_hash: str, data: dict | None = None) -> LedgerEntry:
        """Append one entry under an exclusive lock; seq continues from the last line."""
        if op not in LEDGER_OPS:
            raise ValueError(f"Unknown ledger op: {op}")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a+", encoding="utf-8") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                f.seek(0)
                existing = f.read()
                if existing and not existing.endswith("\n"):
                    # an uncommitted line has no newline; drop it before appending
                    committed = existing[: existing.rfind("\n") + 1]
                    logger.warning(f"Truncating torn ledger tail in {self.path}")
                    f.truncate(len(committed.encode("utf-8")))
                    existing = committed
                seq = _last_seq(existing) + 1
                entry = LedgerEntry(
                    seq=seq,
                    op=op,
                    content_hash=content_hash,
                    at=self._clock(),
                    data=data or {},
                )
                f.seek(0, os.SEEK_END)
                f.write(json.dumps(entry.to_dict(), sort_keys=True) + "\n")
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)
        logger.debug(f"Ledger seq={entry.seq} op={op} hash={content_hash[:12]}")
        return entry

    def record_created(self, record: ArchiveRecord) -> LedgerEntry:
        return self.append("created", record.content_hash, {
            "session_id": record.session_id,
            "source_path": record.source_path,
            "archive_path": record.archive_path,
            "projection_path": record.projection_path,
            "collection": record.collection,
            "created_at": record.created_at,
        })

    def mark_indexed(self, content_hash: str) -> LedgerEntry:
        return self.append("indexed", content_hash)

    def mark_index_failed(self, content_hash: str, error: str) -> LedgerEntry:
        return self.append("index_failed", content_hash, {"error": error})

    def mark_distilled(self, content_hash: str, summary_path: str, provider: str) -> LedgerEntry:
        return self.append("distilled", content_hash, {
            "summary_path": summary_path,
            "provider": provider,
        })

    def mark_deleted(self, content_hash: str, reason: str = "retention") -> LedgerEntry:
        return self.append("deleted", content_hash, {"reason": reason})


def _record_from_created(entry: LedgerEntry) -> ArchiveRecord:
    d = entry.data
    return ArchiveRecord(
        session_id=d.get("session_id", ""),
        source_path=d.get("source_path", ""),
        archive_path=d.get("archive_path", ""),
        projection_path=d.get("projection_path", ""),
        content_hash=entry.content_hash,
        created_at=float(d.get("created_at", entry.at)),
        collection=d.get("collection", "history"),
    )


def _last_seq(text: str) -> int:
    for line in reversed(text.splitlines()):
        if not line.strip():
            continue
        try:
            return int(json.loads(line)["seq"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            continue
    return 0
