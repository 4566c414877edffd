"""ContinuityProtocol: build the handoff map and roll the host over to a fresh session."""

from __future__ import annotations

import json
import logging
import tempfile
import time
from pathlib import Path
from typing import Callable

from ..storage.helpers import atomic_write_json, slugify
from ..types import ContinuityMap, DistillationRecord, MoonError

logger = logging.getLogger(__name__)

MAX_BULLETS_PER_RECORD = 12
MAX_BULLETS = 40


def summary_bullets(records: list[DistillationRecord]) -> list[str]:
    bullets: list[str] = []
    for record in records:
        taken = 0
        for line in record.summary_text.splitlines():
            line = line.strip()
            if not line.startswith(("- ", "* ")):
                continue
            bullets.append(line[2:].strip())
            taken += 1
            if taken >= MAX_BULLETS_PER_RECORD or len(bullets) >= MAX_BULLETS:
                break
        if len(bullets) >= MAX_BULLETS:
            break
    return bullets


class ContinuityProtocol:
    """Rollover never half-applies: on any failure the old session stays active
    and the map is persisted with ``rollover_ok=False``."""

    def __init__(self, host, maps_dir: Path, clock: Callable[[], float] = time.time) -> None:
        self.host = host
        self.maps_dir = Path(maps_dir)
        self._clock = clock

    def build_map(
        self,
        old_session_id: str,
        records: list[DistillationRecord],
        previous: ContinuityMap | None = None,
    ) -> ContinuityMap:
        bullets = summary_bullets(records)
        archive_refs = [r.archive_ref for r in records]
        memory_refs = sorted({r.summary_path for r in records if r.summary_path})
        if previous is not None:
            bullets = previous.summary_bullets + [b for b in bullets if b not in previous.summary_bullets]
            archive_refs = previous.archive_refs + [a for a in archive_refs if a not in previous.archive_refs]
            memory_refs = sorted(set(previous.memory_refs) | set(memory_refs))
        return ContinuityMap(
            old_session_id=old_session_id,
            new_session_id=None,
            summary_bullets=bullets[:MAX_BULLETS],
            archive_refs=archive_refs,
            memory_refs=memory_refs,
            created_at=self._clock(),
        )

    def rollover(self, cmap: ContinuityMap) -> ContinuityMap:
        """Create + inject (or run the override command), then persist the map once."""
        try:
            if self.host.has_rollover_command:
                cmap.new_session_id = self._run_override(cmap)
            else:
                cmap.new_session_id = self.host.create_session()
                self.host.inject_context(cmap.new_session_id, cmap.render())
            cmap.rollover_ok = True
            logger.info(f"Rolled over {cmap.old_session_id} -> {cmap.new_session_id}")
        except MoonError as e:
            cmap.rollover_ok = False
            cmap.error = str(e)
            logger.warning(f"Rollover of {cmap.old_session_id} failed; old session stays active: {e}")
        self.persist(cmap)
        return cmap

    def _run_override(self, cmap: ContinuityMap) -> str:
        with tempfile.NamedTemporaryFile(
            "w", suffix=".md", prefix="moon-continuity-", delete=False, encoding="utf-8"
        ) as f:
            f.write(cmap.render())
            path = f.name
        try:
            return self.host.run_rollover_command(cmap.old_session_id, path)
        finally:
            Path(path).unlink(missing_ok=True)

    def persist(self, cmap: ContinuityMap) -> Path:
        base = f"{int(cmap.created_at)}-{slugify(cmap.old_session_id)}"
        path = self.maps_dir / f"{base}.json"
        n = 1
        while path.exists():
            path = self.maps_dir / f"{base}-{n}.json"
            n += 1
        cmap.map_path = str(path)
        atomic_write_json(path, cmap.to_dict())
        return path

    def load(self, map_path: str | Path) -> ContinuityMap:
        return ContinuityMap.from_dict(json.loads(Path(map_path).read_text(encoding="utf-8")))

    def latest_for(self, old_session_id: str) -> ContinuityMap | None:
        """Most recent map written for ``old_session_id``."""
        if not self.maps_dir.is_dir():
            return None
        best: ContinuityMap | None = None
        for path in self.maps_dir.glob("*.json"):
            try:
                cmap = self.load(path)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping unreadable continuity map {path}: {e}")
                continue
            if cmap.old_session_id != old_session_id:
                continue
            if best is None or cmap.created_at >= best.created_at:
                best = cmap
        return best
