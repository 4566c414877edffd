"""PruneEngine: compact the live session through the host, never touching archives."""

from __future__ import annotations

import logging

from ..types import ArchiveRecord, DataLossRiskError

logger = logging.getLogger(__name__)


class PruneEngine:
    def __init__(self, host) -> None:
        self.host = host

    def prune(self, session_id: str, archive: ArchiveRecord | None) -> None:
        """Compact ``session_id``. Refused unless its content is already archived."""
        if archive is None or archive.deleted:
            raise DataLossRiskError(f"Refusing to prune {session_id}: no archive reference")
        logger.info(
            f"Pruning session {session_id} (archived as {archive.archive_path}, "
            f"indexed={archive.indexed})"
        )
        self.host.compact_session(session_id)
