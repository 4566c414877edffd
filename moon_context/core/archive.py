"""ArchivePipeline: snapshot a session, project it to markdown, record it in the ledger."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Callable

import yaml

from ..storage.archive_map import ArchiveMap
from ..storage.helpers import atomic_write_bytes, atomic_write_text, slugify
from ..storage.ledger import Ledger
from ..types import ArchiveRecord, ArchiveResult, DataLossRiskError, MoonPaths
from .transcript import parse_transcript, signal_lines

logger = logging.getLogger(__name__)

PROJECTION_SUFFIX = ".projection.md"
SKIP_SUFFIXES = (".lock", ".tmp", ".swp", ".part")
SESSION_INDEX_NAME = "sessions.json"


def is_session_file(path: Path) -> bool:
    name = path.name.lower()
    if name.endswith(SKIP_SUFFIXES):
        return False
    if path.suffix.lower() == ".jsonl":
        return True
    return path.suffix.lower() == ".json" and name != SESSION_INDEX_NAME


def latest_session_file(directory: Path) -> Path | None:
    """Most recently modified session file in ``directory``, or None."""
    directory = Path(directory)
    if not directory.is_dir():
        return None
    latest: tuple[float, Path] | None = None
    for path in directory.iterdir():
        if not path.is_file() or not is_session_file(path):
            continue
        mtime = path.stat().st_mtime
        if latest is None or mtime > latest[0]:
            latest = (mtime, path)
    return latest[1] if latest else None


def resolve_session_source(sessions_dir: Path, session_id: str | None = None) -> Path | None:
    """Find the transcript for ``session_id`` (file name or ``sessions.json`` key)."""
    sessions_dir = Path(sessions_dir)
    if not session_id:
        return latest_session_file(sessions_dir)

    for suffix in (".jsonl", ".json"):
        candidate = sessions_dir / f"{session_id}{suffix}"
        if candidate.is_file():
            return candidate

    index_path = sessions_dir / SESSION_INDEX_NAME
    if index_path.is_file():
        try:
            index = json.loads(index_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Could not parse {index_path}: {e}")
            return None
        entry = index.get(session_id) if isinstance(index, dict) else None
        if isinstance(entry, dict):
            session_file = entry.get("sessionFile")
            if session_file and Path(session_file).is_file():
                return Path(session_file)
            inner_id = entry.get("sessionId")
            if inner_id:
                candidate = sessions_dir / f"{inner_id}.jsonl"
                if candidate.is_file():
                    return candidate
    return None


def file_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def projection_path_for(archive_path: Path) -> Path:
    """Projection file written beside ``archive_path``."""
    archive_path = Path(archive_path)
    return archive_path.with_name(archive_path.name + PROJECTION_SUFFIX)


def render_projection(record: ArchiveRecord, lines: list[str]) -> str:
    frontmatter = {
        "moon_archive_projection": 1,
        "session_id": record.session_id,
        "source_path": record.source_path,
        "archive_path": record.archive_path,
        "content_hash": record.content_hash,
        "created_at_epoch_secs": int(record.created_at),
    }
    out = ["---"]
    out.append(yaml.dump(frontmatter, default_flow_style=False, sort_keys=False).strip())
    out.append("---")
    out.append("")
    out.append("# Archive Projection")
    out.append("")
    out.append("## Signals")
    if not lines:
        out.append("- no textual signals extracted")
    for line in lines:
        normalized = line.strip()
        if normalized.startswith("- "):
            normalized = normalized[2:].strip()
        if normalized:
            out.append(f"- {normalized}")
    out.append("")
    return "\n".join(out)


class ArchivePipeline:
    """Copies raw session content into ``archives/raw`` exactly once per content hash."""

    def __init__(
        self,
        paths: MoonPaths,
        ledger: Ledger,
        archive_map: ArchiveMap,
        collection: str = "history",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.paths = paths
        self.ledger = ledger
        self.archive_map = archive_map
        self.collection = collection
        self._clock = clock

    def archive(self, source_path: str | Path, session_id: str | None = None) -> ArchiveResult:
        source = Path(source_path).expanduser()
        if not source.is_file():
            raise DataLossRiskError(f"Source session missing: {source}")
        try:
            raw = source.read_bytes()
        except OSError as e:
            raise DataLossRiskError(f"Cannot read source session {source}: {e}") from e

        content_hash = file_hash(raw)
        session_id = session_id or source.stem

        existing = self.ledger.get(content_hash)
        if existing is not None:
            archive_path = Path(existing.archive_path)
            if not archive_path.is_file():
                logger.warning(f"Archive file {archive_path} missing for known hash; restoring")
                self._write(archive_path, raw)
            logger.info(f"Archive dedupe: {source.name} already stored as {archive_path.name}")
            return ArchiveResult(record=existing, deduped=True)

        now = self._clock()
        ext = source.suffix.lstrip(".") or "json"
        archive_path = self.paths.raw_dir / f"{slugify(source.stem)}-{int(now)}.{ext}"
        if archive_path.exists():
            archive_path = self.paths.raw_dir / f"{slugify(source.stem)}-{int(now)}-{content_hash[:8]}.{ext}"

        record = ArchiveRecord(
            session_id=session_id,
            source_path=str(source),
            archive_path=str(archive_path),
            projection_path=str(projection_path_for(archive_path)),
            content_hash=content_hash,
            created_at=now,
            collection=self.collection,
        )

        self._write(archive_path, raw)
        messages = parse_transcript(raw.decode("utf-8", errors="replace"))
        try:
            atomic_write_text(Path(record.projection_path), render_projection(record, signal_lines(messages)))
        except OSError as e:
            raise DataLossRiskError(f"Cannot write projection {record.projection_path}: {e}") from e

        self.ledger.record_created(record)
        self.archive_map.upsert(record, updated_at=now)
        logger.info(f"Archived {source} -> {archive_path} ({len(raw)} bytes, {len(messages)} messages)")
        return ArchiveResult(record=record, deduped=False)

    def _write(self, archive_path: Path, raw: bytes) -> None:
        try:
            atomic_write_bytes(archive_path, raw)
        except OSError as e:
            raise DataLossRiskError(f"Cannot write archive {archive_path}: {e}") from e
