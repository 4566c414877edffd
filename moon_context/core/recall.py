"""RecallEngine: query archived history and return a rehydration-ready result."""

from __future__ import annotations

import logging
from pathlib import Path

from ..storage.archive_map import ArchiveMap
from ..storage.helpers import extract_excerpt
from ..storage.ledger import Ledger
from ..types import (
    ContractViolationError,
    IndexUnavailableError,
    RecallError,
    RecallMatch,
    RecallResult,
)
from .archive import PROJECTION_SUFFIX, projection_path_for

logger = logging.getLogger(__name__)

DETERMINISTIC_SCORE = 1_000_000.0
SNIPPET_CHARS = 280
_PROJECTION_HEADER_PREFIXES = (
    "---",
    "#",
    "moon_archive_projection:",
    "session_id:",
    "source_path:",
    "archive_path:",
    "content_hash:",
    "created_at_epoch_secs:",
)


def snippet_from_archive(archive_path: str, query: str = "") -> str:
    """First signal line of the projection, else an excerpt of the raw archive."""
    path = Path(archive_path)
    projection = path if path.name.endswith(PROJECTION_SUFFIX) else projection_path_for(path)
    if projection.is_file():
        for line in projection.read_text(encoding="utf-8", errors="replace").splitlines():
            trimmed = line.strip()
            if not trimmed or trimmed.startswith(_PROJECTION_HEADER_PREFIXES):
                continue
            normalized = trimmed[2:].strip() if trimmed.startswith("- ") else trimmed
            if normalized:
                return normalized[:SNIPPET_CHARS]
    if path.is_file():
        raw = path.read_text(encoding="utf-8", errors="replace")
        return extract_excerpt(raw, query, context_chars=SNIPPET_CHARS // 2)[:SNIPPET_CHARS * 2]
    return ""


def parse_matches(items: list[dict]) -> list[RecallMatch]:
    out = []
    for item in items:
        snippet = item.get("snippet") or item.get("text") or ""
        archive_ref = item.get("path") or item.get("source") or item.get("file") or ""
        score = item.get("score")
        if not isinstance(score, (int, float)) or isinstance(score, bool):
            score = len(snippet) / 1000.0
        out.append(RecallMatch(
            archive_ref=str(archive_ref),
            snippet=str(snippet),
            score=float(score),
            metadata=item,
        ))
    return out


class RecallEngine:
    """Read-only: never mutates the ledger, the map, or the index."""

    def __init__(
        self,
        index,
        ledger: Ledger | None = None,
        archive_map: ArchiveMap | None = None,
        max_results: int = 10,
    ) -> None:
        self.index = index
        self.ledger = ledger
        self.archive_map = archive_map
        self.max_results = max_results

    def _deterministic(self, key: str) -> RecallMatch | None:
        if self.archive_map is None or not key:
            return None
        entry = self.archive_map.get(key)
        if not entry:
            return None
        return RecallMatch(
            archive_ref=entry.get("archive_path", ""),
            snippet=snippet_from_archive(entry.get("archive_path", "")),
            score=DETERMINISTIC_SCORE,
            metadata={
                "deterministic": True,
                "session_key": key,
                "source_path": entry.get("source_path"),
                "projection_path": entry.get("projection_path"),
                "updated_at": entry.get("updated_at"),
            },
        )

    def _tombstoned(self) -> set[str]:
        if self.ledger is None:
            return set()
        dead: set[str] = set()
        for record in self.ledger.records(include_deleted=True):
            if record.deleted:
                dead.add(record.archive_path)
                dead.add(record.projection_path)
                dead.add(Path(record.projection_path).name)
                dead.add(Path(record.archive_path).name)
        dead.discard("")
        return dead

    def recall(self, query: str, collection: str, session_key: str | None = None) -> RecallResult:
        """Search ``collection``. Zero hits is ``empty=True``; a backend failure raises RecallError."""
        matches: list[RecallMatch] = []
        pinned = self._deterministic(session_key or query.strip())
        if pinned is not None:
            matches.append(pinned)

        try:
            items = self.index.search(collection, query)
        except (IndexUnavailableError, ContractViolationError) as e:
            raise RecallError(f"Recall backend failed for collection '{collection}': {e}") from e

        for match in parse_matches(items):
            if not match.snippet and match.archive_ref:
                match.snippet = snippet_from_archive(match.archive_ref, query)
            matches.append(match)

        tombstoned = self._tombstoned()
        seen: set[str] = set()
        deduped: list[RecallMatch] = []
        for match in matches:
            ref = match.archive_ref
            if ref and (ref in tombstoned or Path(ref).name in tombstoned):
                logger.debug(f"Dropping recall hit for deleted archive {ref}")
                continue
            if ref:
                if ref in seen:
                    continue
                seen.add(ref)
            deduped.append(match)

        deduped.sort(key=lambda m: m.score, reverse=True)
        deduped = deduped[: self.max_results]
        return RecallResult(query=query, collection=collection, matches=deduped, empty=not deduped)
