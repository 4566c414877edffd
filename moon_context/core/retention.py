"""Retention: age bands and marker-gated deletion of archives."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from ..storage.archive_map import ArchiveMap
from ..storage.ledger import Ledger
from ..types import (
    ArchiveRecord,
    IndexUnavailableError,
    RetentionConfig,
    RetentionError,
    RetentionReport,
    WatcherState,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400

ACTIVE = "active"
WARM = "warm"
COLD = "cold"


def age_days(record: ArchiveRecord, now: float) -> int:
    return int(max(0.0, now - record.created_at) // SECONDS_PER_DAY)


def classify(record: ArchiveRecord, now: float, config: RetentionConfig) -> str:
    age = age_days(record, now)
    if age <= config.active_days:
        return ACTIVE
    if age < config.cold_days:
        return WARM
    return COLD


def is_deletable(record: ArchiveRecord, now: float, config: RetentionConfig) -> bool:
    return not record.deleted and record.distilled and classify(record, now, config) == COLD


class RetentionManager:
    def __init__(
        self,
        ledger: Ledger,
        archive_map: ArchiveMap,
        index,
        config: RetentionConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.archive_map = archive_map
        self.index = index
        self.config = config
        self._clock = clock

    def delete(self, record: ArchiveRecord) -> list[str]:
        """Tombstone then unlink one archive. Returns unlink failures.

        Order: map entries, ledger tombstone, files. A record without a
        distillation marker is refused.
        """
        if not record.distilled:
            raise RetentionError(
                f"Refusing to delete {record.archive_path}: no distillation marker"
            )
        self.archive_map.remove_archive(record.archive_path)
        if not record.deleted:
            self.ledger.mark_deleted(record.content_hash)
            record.deleted = True
        return self._unlink(record)

    def _unlink(self, record: ArchiveRecord) -> list[str]:
        failures = []
        for raw in (record.archive_path, record.projection_path):
            if not raw:
                continue
            path = Path(raw)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Could not delete {path}: {e}")
                failures.append(f"{path}: {e}")
        if not failures:
            logger.info(f"Deleted archive {record.archive_path}")
        return failures

    def sweep(self, state: WatcherState) -> RetentionReport:
        """Classify every live archive and delete cold ones that carry a marker.

        Tombstoned archives whose files survived an earlier failure are
        retried. The index is refreshed after any deletion, and again on every
        sweep while ``state.index_refresh_pending`` is set.
        """
        now = self._clock()
        report = RetentionReport()
        deleted_any = False

        for record in self.ledger.records(include_deleted=True):
            if record.deleted:
                if Path(record.archive_path).exists() or Path(record.projection_path).exists():
                    failures = self._unlink(record)
                    report.failed.extend(failures)
                    deleted_any = deleted_any or not failures
                continue

            band = classify(record, now, self.config)
            if band == ACTIVE:
                report.active += 1
            elif band == WARM:
                report.warm += 1
            else:
                report.cold += 1
                if not record.distilled:
                    report.kept_without_marker.append(record.archive_path)
                    continue
                failures = self.delete(record)
                report.deleted.append(record.archive_path)
                report.failed.extend(failures)
                deleted_any = True

        if deleted_any or state.index_refresh_pending:
            try:
                self.index.refresh()
                state.index_refresh_pending = False
            except IndexUnavailableError as e:
                logger.warning(f"Index refresh after retention failed; will retry: {e}")
                state.index_refresh_pending = True
                report.index_refresh_error = str(e)
        return report
