"""Watcher: the control loop wiring usage, thresholds, archive, prune, distill, continuity and retention."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import Callable, TextIO

from .config import load_config, resolve_paths
from .core.archive import ArchivePipeline, latest_session_file, resolve_session_source
from .core.audit import (
    CONTINUITY_FAILED,
    DISTILL_CHUNK_FAILED,
    DISTILL_FAILED,
    INDEX_FAILED,
    LEDGER_READ_FAILED,
    RETENTION_DELETE_FAILED,
    AuditLog,
    emit_warning,
)
from .core.continuity import ContinuityProtocol
from .core.distiller import (
    DailyNotes,
    DistillerChain,
    LocalDistiller,
    RemoteDistiller,
    select_distill_candidates,
)
from .core.host import HostSession
from .core.index import IndexClient
from .core.prune import PruneEngine
from .core.recall import RecallEngine
from .core.retention import RetentionManager
from .core.thresholds import ThresholdStateMachine
from .core.usage import HostUsageProvider, SessionFileUsageProvider, UsageChain
from .providers import build_provider
from .storage.archive_map import ArchiveMap
from .storage.ledger import Ledger
from .storage.lock import WatcherLock, read_lock_info
from .storage.state import StateStore
from .types import (
    ArchiveRecord,
    CycleOutcome,
    DataLossRiskError,
    DistillationError,
    DistillationRecord,
    IdleTrigger,
    IndexUnavailableError,
    LedgerReadError,
    MoonConfig,
    MoonError,
    RecallResult,
    StageFailure,
    Tier,
    UsageSnapshot,
    UsageUnavailableError,
    WatcherState,
)

logger = logging.getLogger(__name__)


class Watcher:
    """Main orchestrator: one ``cycle()`` per poll.

    Usage:
        watcher = Watcher(config_path="./moon-context.yaml")
        outcome = watcher.run_once()      # one locked cycle
        watcher.run_daemon()              # loop until SIGTERM/SIGINT

    Collaborators (usage provider, index, host, distiller) can be injected;
    otherwise they are built from config.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        config: MoonConfig | None = None,
        *,
        usage_provider=None,
        index=None,
        host=None,
        distiller=None,
        llm_provider=None,
        clock: Callable[[], float] = time.time,
        warn_stream: TextIO | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        self.paths = resolve_paths(self.config)
        self._clock = clock
        self._warn_stream = warn_stream

        self._init_storage()
        self._init_usage(usage_provider)
        self._init_index(index)
        self._init_host(host)
        self._init_distiller(distiller, llm_provider)
        self._init_stages()

    # -- wiring --

    def _init_storage(self) -> None:
        self.ledger = Ledger(self.paths.ledger_path, clock=self._clock)
        self.state_store = StateStore(self.paths.state_file)
        self.archive_map = ArchiveMap(self.paths.archive_map_path)
        self.audit = AuditLog(self.paths.audit_log, clock=self._clock)
        self.notes = DailyNotes(self.paths.memory_dir)

    def _init_usage(self, usage_provider) -> None:
        if usage_provider is not None:
            self.usage_provider = usage_provider
            return
        fallback = SessionFileUsageProvider(
            self.paths.sessions_dir,
            context_window=self.config.usage.context_window,
            clock=self._clock,
        )
        providers = [fallback]
        if self.config.usage.provider == "primary":
            primary = HostUsageProvider(
                bin=self.config.host.bin,
                args=self.config.host.usage_args,
                timeout=self.config.usage.timeout_secs,
                default_max=self.config.usage.context_window,
                clock=self._clock,
            )
            providers.insert(0, primary)
        self.usage_provider = UsageChain(providers, self.config.usage.staleness_secs, clock=self._clock)

    def _init_index(self, index) -> None:
        self.index = index or IndexClient(bin=self.config.index.bin, timeout=self.config.index.timeout_secs)

    def _init_host(self, host) -> None:
        self.host = host or HostSession(self.config.host)

    def _init_distiller(self, distiller, llm_provider) -> None:
        if distiller is not None:
            self.distiller = distiller
            return
        local = LocalDistiller(clock=self._clock)
        provider = llm_provider
        if provider is None and self.config.distill.provider != "local":
            name = self.config.distill.provider
            provider = build_provider(name, self.config.providers.get(name, {}), self.config.distill)
        chain = [local]
        if provider is not None:
            remote = RemoteDistiller(
                provider,
                max_tokens=self.config.distill.max_tokens,
                chunk_chars=self.config.distill.chunk_chars,
                on_chunk_failure=self._on_chunk_failure,
                clock=self._clock,
            )
            chain.insert(0, remote)
        self.distiller = DistillerChain(chain)

    def _init_stages(self) -> None:
        self.thresholds = ThresholdStateMachine(self.config.thresholds, self.config.watcher.cooldown_secs)
        self.archiver = ArchivePipeline(
            self.paths, self.ledger, self.archive_map,
            collection=self.config.index.collection, clock=self._clock,
        )
        self.pruner = PruneEngine(self.host)
        self.continuity = ContinuityProtocol(self.host, self.paths.maps_dir, clock=self._clock)
        self.retention = RetentionManager(
            self.ledger, self.archive_map, self.index, self.config.retention, clock=self._clock,
        )
        self.recall_engine = RecallEngine(
            self.index, ledger=self.ledger, archive_map=self.archive_map,
            max_results=self.config.index.max_results,
        )

    # -- reporting --

    def _warn(self, code: str, stage: str, action: str, **fields: str) -> str:
        line = emit_warning(code, stage, action, stream=self._warn_stream, **fields)
        logger.warning(line)
        return line

    def _fail(self, outcome: CycleOutcome | None, stage: str, error: Exception) -> None:
        kind = error.kind if isinstance(error, MoonError) else MoonError.kind
        if outcome is not None:
            outcome.failures.append(StageFailure(stage=stage, kind=kind, message=str(error)))
        self.audit.record(stage, "failed", str(error), kind=kind.value)

    def _on_chunk_failure(self, archive: ArchiveRecord, chunk_index: int, error: Exception) -> None:
        self._warn(
            DISTILL_CHUNK_FAILED, "distill", f"chunk-{chunk_index + 1}",
            session=archive.session_id, archive=archive.archive_path, source=archive.source_path,
            retry="local-fallback-for-chunk", reason="remote-chunk-failed", err=str(error),
        )

    def _ledger_failed(self, outcome: CycleOutcome | None, stage: str, error: LedgerReadError) -> None:
        self._warn(
            LEDGER_READ_FAILED, stage, "ledger-replay",
            archive=str(self.paths.ledger_path), retry="retry-next-cycle",
            reason="malformed-ledger-line", err=str(error),
        )
        self._fail(outcome, stage, error)

    # -- entry points --

    def run_once(self) -> CycleOutcome:
        """Acquire the lock and run exactly one cycle."""
        with WatcherLock(self.paths.lock_file, mode="once"):
            return self.cycle()

    def run_daemon(
        self,
        stop_event: threading.Event | None = None,
        max_cycles: int | None = None,
    ) -> int:
        """Loop until stopped. The in-flight cycle always completes. Returns cycles run."""
        stop = stop_event or threading.Event()
        previous_handlers = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGTERM, signal.SIGINT):
                previous_handlers[signum] = signal.signal(signum, lambda *_: stop.set())

        cycles = 0
        try:
            with WatcherLock(self.paths.lock_file, mode="daemon"):
                logger.info(
                    f"Watcher daemon started (pid {os.getpid()}, poll "
                    f"{self.config.watcher.poll_interval_secs}s)"
                )
                while not stop.is_set():
                    try:
                        outcome = self.cycle()
                        if not outcome.ok:
                            logger.warning(f"Cycle finished with {len(outcome.failures)} failure(s)")
                    except Exception as e:
                        logger.exception(f"Watcher cycle crashed: {e}")
                        self.audit.record("cycle", "crashed", str(e))
                    cycles += 1
                    if max_cycles is not None and cycles >= max_cycles:
                        break
                    stop.wait(self.config.watcher.poll_interval_secs)
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)
        logger.info(f"Watcher daemon stopped after {cycles} cycle(s)")
        return cycles

    # -- the cycle --

    def cycle(self) -> CycleOutcome:
        """Run one cycle. Caller must hold the watcher lock."""
        now = self._clock()
        state = self.state_store.load()
        state.heartbeat_at = now
        outcome = CycleOutcome(started_at=now)

        try:
            usage = self.usage_provider.get_usage()
        except UsageUnavailableError as e:
            logger.warning(f"Usage unavailable: {e}")
            self._fail(outcome, "usage", e)
            self.state_store.save(state)
            return outcome

        outcome.usage = usage
        state.last_usage = usage
        state.last_session_id = usage.session_id

        self._retry_unindexed(outcome)

        decisions = self.thresholds.evaluate(state, usage.ratio, now)
        if self.thresholds.blocked(state, now):
            outcome.notes.append(f"blocked until {state.blocked_until:.0f} after data-loss risk")
        self.state_store.save(state)

        fired: list[Tier] = []
        archive: ArchiveRecord | None = None
        destructive_ok = True

        for decision in decisions:
            tier = decision.tier
            if tier is not Tier.ARCHIVE and not destructive_ok:
                outcome.notes.append(f"{tier.value} skipped: archive failed this cycle")
                continue
            if tier is Tier.DISTILL and not decision.recovered and not self._idle_window_open(state, now):
                outcome.notes.append("distill waiting for idle window")
                continue

            self.thresholds.begin(state, tier, now)
            self.state_store.save(state)
            outcome.fired.append(tier.value)
            try:
                if tier is Tier.ARCHIVE:
                    archive = self._archive_stage(usage, state, outcome)
                elif tier is Tier.PRUNE:
                    archive = archive or self._archive_stage(usage, state, outcome)
                    self.pruner.prune(usage.session_id, archive)
                    outcome.pruned = True
                    self.audit.record("prune", "ok", f"compacted {usage.session_id}")
                else:
                    archive = archive or self._archive_stage(usage, state, outcome)
                    self._distill_tier(usage, state, outcome)
                self.thresholds.complete(state, tier)
                fired.append(tier)
            except LedgerReadError as e:
                self._ledger_failed(outcome, tier.value, e)
                self.thresholds.fail(state, tier, retry=True)
                destructive_ok = False
            except DataLossRiskError as e:
                logger.error(f"Data-loss risk in {tier.value}: {e}")
                self._fail(outcome, tier.value, e)
                self.thresholds.fail(state, tier, retry=True)
                self.thresholds.block(state, now, self.config.watcher.data_loss_backoff_secs)
                destructive_ok = False
            except MoonError as e:
                logger.warning(f"Tier {tier.value} failed: {e}")
                self._fail(outcome, tier.value, e)
                self.thresholds.fail(state, tier, retry=True)
            self.state_store.save(state)

        if destructive_ok and not self.thresholds.blocked(state, now):
            if isinstance(self.config.distill_trigger, IdleTrigger) and Tier.DISTILL not in fired:
                self._idle_distill(state, outcome, now)
            if self.config.retention.enabled:
                self._retention_stage(state, outcome)

        self.thresholds.finish_cycle(state, fired, now)
        self.state_store.save(state)
        self.audit.record(
            "cycle", "ok" if outcome.ok else "failed",
            f"ratio={usage.ratio:.4f} source={usage.source} fired={','.join(outcome.fired) or 'none'}",
        )
        return outcome

    # -- stages --

    def _resolve_source(self, usage: UsageSnapshot) -> Path | None:
        if usage.session_path and Path(usage.session_path).is_file():
            return Path(usage.session_path)
        source = resolve_session_source(self.paths.sessions_dir, usage.session_id)
        if source is None:
            source = latest_session_file(self.paths.sessions_dir)
            if source is not None:
                logger.info(f"No transcript named for {usage.session_id}; using newest {source.name}")
        return source

    def _archive_stage(self, usage: UsageSnapshot, state: WatcherState, outcome: CycleOutcome) -> ArchiveRecord:
        source = self._resolve_source(usage)
        if source is None:
            raise DataLossRiskError(f"No source transcript for session {usage.session_id}")

        result = self.archiver.archive(source, usage.session_id)
        outcome.archive = result
        record = result.record
        if not result.deduped:
            state.last_archive_created_at = record.created_at
            self.audit.record("archive", "ok", f"archived {record.source_path} -> {record.archive_path}")
        if not record.indexed:
            self._index_record(record, outcome, first_attempt=not result.deduped)
        if not record.distilled and record.content_hash not in state.pending_distill_queue:
            state.pending_distill_queue.append(record.content_hash)
            self._sync_queue(state)
        return record

    def _index_record(self, record: ArchiveRecord, outcome: CycleOutcome, first_attempt: bool = True) -> bool:
        try:
            self.index.add(record.collection, self.paths.raw_dir)
        except IndexUnavailableError as e:
            if first_attempt:
                self.ledger.mark_index_failed(record.content_hash, str(e))
            self._warn(
                INDEX_FAILED, "index", "collection-add",
                session=record.session_id, archive=record.archive_path, source=record.source_path,
                retry="retry-next-cycle", reason="index-add-failed", err=str(e),
            )
            self._fail(outcome, "index", e)
            return False
        self.ledger.mark_indexed(record.content_hash)
        record.indexed = True
        return True

    def _retry_unindexed(self, outcome: CycleOutcome) -> None:
        try:
            pending = [r for r in self.ledger.records() if not r.indexed and Path(r.archive_path).is_file()]
        except LedgerReadError as e:
            self._ledger_failed(outcome, "index", e)
            return
        if not pending:
            return
        logger.info(f"Retrying index for {len(pending)} archive(s)")
        if self._index_record(pending[0], outcome, first_attempt=False):
            for record in pending[1:]:
                self.ledger.mark_indexed(record.content_hash)

    def _idle_window_open(self, state: WatcherState, now: float) -> bool:
        trigger = self.config.distill_trigger
        if not isinstance(trigger, IdleTrigger):
            return True
        last = state.last_archive_created_at
        return last is None or now - last >= trigger.idle_secs

    def _sync_queue(self, state: WatcherState) -> list[ArchiveRecord]:
        """Rebuild the pending queue from the ledger, oldest archive day first."""
        records = [r for r in self.ledger.records() if not r.distilled]
        records.sort(key=lambda r: (r.day, r.created_at, r.content_hash))
        state.pending_distill_queue = [r.content_hash for r in records]
        return records

    def _candidates(self, state: WatcherState) -> list[ArchiveRecord]:
        self._sync_queue(state)
        return select_distill_candidates(
            self.ledger.records(),
            self.config.distill.max_per_cycle,
            require_indexed=self.config.distill.require_indexed,
        )

    def distill_record(self, record: ArchiveRecord, outcome: CycleOutcome | None = None) -> DistillationRecord | None:
        """Distill one archive into the daily notes. Already-distilled archives are a no-op."""
        if record.distilled:
            logger.info(f"{record.archive_path} already distilled; skipping")
            return None
        try:
            produced = self.distiller.produce(record)
        except DistillationError as e:
            self._warn(
                DISTILL_FAILED, "distill", "produce",
                session=record.session_id, archive=record.archive_path, source=record.source_path,
                retry="retry-next-cycle", reason="all-distillers-failed", err=str(e),
            )
            self._fail(outcome, "distill", e)
            raise
        path = self.notes.append(produced)
        produced.summary_path = str(path)
        self.ledger.mark_distilled(record.content_hash, str(path), produced.provider)
        record.distilled = True
        self.audit.record(
            "distill", "ok",
            f"distilled {record.archive_path} into {path}", provider=produced.provider,
        )
        return produced

    def _distill_batch(self, state: WatcherState, outcome: CycleOutcome) -> list[DistillationRecord]:
        produced: list[DistillationRecord] = []
        for record in self._candidates(state):
            try:
                result = self.distill_record(record, outcome)
            except DistillationError:
                continue
            if result is not None:
                produced.append(result)
                outcome.distilled.append(result)
        self._sync_queue(state)
        return produced

    def _distill_tier(self, usage: UsageSnapshot, state: WatcherState, outcome: CycleOutcome) -> None:
        produced = self._distill_batch(state, outcome)

        previous = self.continuity.latest_for(usage.session_id)
        retry_previous = previous is not None and not previous.rollover_ok
        if not produced and not retry_previous:
            outcome.notes.append("continuity skipped: nothing distilled")
            return

        cmap = self.continuity.build_map(usage.session_id, produced, previous if retry_previous else None)
        cmap = self.continuity.rollover(cmap)
        outcome.continuity = cmap
        state.last_rollover = {
            "map_path": cmap.map_path,
            "old_session_id": cmap.old_session_id,
            "new_session_id": cmap.new_session_id,
            "rollover_ok": cmap.rollover_ok,
            "at": cmap.created_at,
        }
        if cmap.rollover_ok:
            state.last_session_id = cmap.new_session_id
            self.audit.record(
                "continuity", "ok",
                f"rolled over {cmap.old_session_id} -> {cmap.new_session_id}", map_path=cmap.map_path,
            )
            return

        self._warn(
            CONTINUITY_FAILED, "continuity", "rollover",
            session=cmap.old_session_id, archive=",".join(cmap.archive_refs), source=cmap.map_path or "",
            retry="retry-on-next-distill-tier", reason="rollover-failed", err=cmap.error or "",
        )
        self.audit.record(
            "continuity", "failed", cmap.error or "rollover failed", map_path=cmap.map_path,
        )
        outcome.notes.append(f"rollover not applied; old session {cmap.old_session_id} kept")

    def _idle_distill(self, state: WatcherState, outcome: CycleOutcome, now: float) -> None:
        try:
            self._sync_queue(state)
        except LedgerReadError as e:
            self._ledger_failed(outcome, "distill", e)
            return
        if not state.pending_distill_queue:
            return
        if not self._idle_window_open(state, now):
            outcome.notes.append("idle distill waiting for idle window")
            return
        produced = self._distill_batch(state, outcome)
        if produced:
            outcome.notes.append(f"idle distill produced {len(produced)} note(s)")

    def _retention_stage(self, state: WatcherState, outcome: CycleOutcome) -> None:
        try:
            report = self.retention.sweep(state)
        except LedgerReadError as e:
            self._ledger_failed(outcome, "retention", e)
            return
        outcome.retention = report
        for failure in report.failed:
            path, _, err = failure.partition(": ")
            self._warn(
                RETENTION_DELETE_FAILED, "retention", "unlink",
                archive=path, retry="retry-next-cycle", reason="unlink-failed", err=err,
            )
            self.audit.record("retention", "failed", failure)
        if report.failed:
            outcome.failures.append(StageFailure(
                stage="retention", kind=DataLossRiskError.kind,
                message=f"{len(report.failed)} file(s) could not be deleted",
            ))
        if report.index_refresh_error:
            self._warn(
                INDEX_FAILED, "retention", "index-refresh",
                retry="retry-next-cycle", reason="refresh-after-delete-failed",
                err=report.index_refresh_error,
            )
            self._fail(outcome, "retention", IndexUnavailableError(report.index_refresh_error))
        for path in report.deleted:
            self.audit.record("retention", "ok", f"deleted {path}")

    # -- manual operations --

    def manual_distill(self, archive_path: str | Path, session_id: str | None = None) -> DistillationRecord | None:
        """Distill one archive on demand (archiving it first if unknown). Never rolls over."""
        with WatcherLock(self.paths.lock_file, mode="distill"):
            path = Path(archive_path).expanduser()
            record = self.ledger.find_by_archive_path(path)
            if record is None:
                result = self.archiver.archive(path, session_id)
                record = result.record
                if not result.deduped:
                    self.audit.record("archive", "ok", f"archived {path} for manual distill")
            elif session_id and session_id != record.session_id:
                logger.info(f"Archive belongs to {record.session_id}; ignoring --session-id {session_id}")
            return self.distill_record(record)

    def recall(self, query: str, collection: str | None = None, session_key: str | None = None) -> RecallResult:
        return self.recall_engine.recall(query, collection or self.config.index.collection, session_key)

    def status(self) -> dict:
        state = self.state_store.load()
        records = self.ledger.records(include_deleted=True)
        return {
            "moon_home": str(self.paths.moon_home),
            "state_file": str(self.paths.state_file),
            "state": state.to_dict(),
            "lock": read_lock_info(self.paths.lock_file),
            "archives": {
                "live": sum(1 for r in records if not r.deleted),
                "indexed": sum(1 for r in records if r.indexed and not r.deleted),
                "distilled": sum(1 for r in records if r.distilled and not r.deleted),
                "deleted": sum(1 for r in records if r.deleted),
            },
        }


def stop_daemon(lock_file: Path, sig: int = signal.SIGTERM) -> int | None:
    """Signal the daemon recorded in ``lock_file``. Returns its pid, or None if none is running."""
    info = read_lock_info(lock_file)
    if not info or not info.get("held") or not info.get("holder_alive"):
        return None
    pid = int(info["pid"])
    os.kill(pid, sig)
    logger.info(f"Sent signal {sig} to watcher pid {pid}")
    return pid
