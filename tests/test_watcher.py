"""End-to-end tests for the watcher cycle with in-memory collaborators."""

import threading

import pytest

from conftest import (
    DAY,
    START,
    FakeClock,
    FakeHost,
    FakeIndex,
    MockLLMProvider,
    StaticUsage,
    make_record,
    provider_error,
    write_session,
)

from moon_context.storage.lock import WatcherLock
from moon_context.storage.state import StateStore
from moon_context.types import ErrorKind, LockHeldError, Phase, WatcherState
from moon_context.watcher import Watcher, stop_daemon


class Harness:
    """A watcher plus handles on its fakes."""

    def __init__(self, tmp_path, make_config, warn_stream, ratio=0.5, index=None, host=None,
                 llm_provider=None, write_source=True, **sections):
        self.clock = FakeClock()
        self.usage = StaticUsage(ratio, clock=self.clock)
        self.index = index or FakeIndex()
        self.host = host or FakeHost()
        self.warn_stream = warn_stream
        if write_source:
            self.source = write_session(tmp_path / "sessions")
        self.watcher = Watcher(
            config=make_config(**sections),
            usage_provider=self.usage,
            index=self.index,
            host=self.host,
            llm_provider=llm_provider,
            clock=self.clock,
            warn_stream=warn_stream,
        )
        self.paths = self.watcher.paths

    def run(self, ratio=None, advance=0):
        if ratio is not None:
            self.usage.ratio = ratio
        self.clock.advance(advance)
        return self.watcher.run_once()

    @property
    def state(self) -> WatcherState:
        return StateStore(self.paths.state_file).load()

    @property
    def warnings(self) -> list[str]:
        return [line for line in self.warn_stream.getvalue().splitlines() if line]


@pytest.fixture
def harness(tmp_path, make_config, warn_stream):
    def _make(**kwargs):
        return Harness(tmp_path, make_config, warn_stream, **kwargs)
    return _make


class TestTiers:
    def test_below_threshold_does_nothing(self, harness):
        h = harness()
        outcome = h.run(0.5)
        assert outcome.ok
        assert outcome.fired == []
        assert h.watcher.ledger.records() == []
        assert h.state.phase is Phase.NORMAL
        assert h.state.heartbeat_at == START

    def test_archive_tier(self, harness):
        h = harness()
        outcome = h.run(0.82)
        assert outcome.ok
        assert outcome.fired == ["archive"]
        record = outcome.archive.record
        assert record.indexed
        assert h.index.added == [("history", str(h.paths.raw_dir))]
        assert h.host.compacted == []

        state = h.state
        assert state.phase is Phase.COOLDOWN
        assert state.cooldown_until == START + 300
        assert state.in_flight is None
        assert state.pending_distill_queue == [record.content_hash]
        assert state.last_archive_created_at == START

    def test_cooldown_then_dedupe(self, harness):
        h = harness()
        h.run(0.82)
        assert h.run(0.83, advance=10).fired == []

        outcome = h.run(0.83, advance=300)
        assert outcome.fired == ["archive"]
        assert outcome.archive.deduped
        assert len(h.watcher.ledger.records()) == 1

    def test_archive_and_prune(self, harness):
        h = harness()
        outcome = h.run(0.86)
        assert outcome.fired == ["archive", "prune"]
        assert outcome.pruned
        assert h.host.compacted == ["sess-1"]
        assert h.watcher.ledger.records()[0].indexed

    def test_state_persisted_before_compaction(self, harness):
        h = harness()
        seen = []
        h.host.on_compact = lambda session_id: seen.append(h.state)
        h.run(0.86)
        assert seen[0].in_flight == "prune"
        assert seen[0].phase is Phase.PRUNE_TRIGGERED
        assert h.state.in_flight is None

    def test_all_tiers_with_rollover(self, harness):
        h = harness()
        outcome = h.run(0.91)
        assert outcome.ok
        assert outcome.fired == ["archive", "prune", "distill"]
        assert len(outcome.distilled) == 1
        assert outcome.distilled[0].provider == "local"

        note = h.paths.memory_dir / "2025-10-09.md"
        assert "Postgres COPY" in note.read_text()
        assert h.watcher.ledger.records()[0].distilled

        cmap = outcome.continuity
        assert cmap.rollover_ok
        assert cmap.new_session_id == "sess-2"
        assert h.host.injected[0][0] == "sess-2"
        state = h.state
        assert state.last_session_id == "sess-2"
        assert state.last_rollover["rollover_ok"] is True
        assert state.pending_distill_queue == []

    def test_emergency_prune_bypasses_cooldown(self, harness):
        h = harness()
        h.run(0.86)
        outcome = h.run(0.96, advance=10)
        assert "archive" not in outcome.fired
        assert "prune" in outcome.fired
        assert h.host.compacted == ["sess-1", "sess-1"]

    def test_prune_failure_retried_next_cycle(self, harness):
        h = harness(host=FakeHost(fail_compact=True))
        outcome = h.run(0.86)
        assert [f.stage for f in outcome.failures] == ["prune"]
        assert "prune" not in h.state.last_action_at

        h.host.fail_compact = False
        outcome = h.run(0.86, advance=10)
        assert "prune" in outcome.fired
        assert h.host.compacted == ["sess-1"]


class TestFailures:
    def test_index_failure_warns_then_retries(self, harness):
        h = harness(index=FakeIndex(fail_add=True))
        outcome = h.run(0.82)
        assert not outcome.ok
        assert outcome.failures[0].stage == "index"
        assert any(w.startswith("MOON_WARN code=index-failed stage=index") for w in h.warnings)
        assert not h.watcher.ledger.records()[0].indexed

        h.index.fail_add = False
        outcome = h.run(0.5, advance=60)
        assert outcome.ok
        assert h.watcher.ledger.records()[0].indexed
        ops = [e.op for e in h.watcher.ledger.entries()]
        assert ops.count("index_failed") == 1
        assert ops[-1] == "indexed"

    def test_missing_source_blocks_destructive_stages(self, harness):
        h = harness(write_source=False)
        outcome = h.run(0.86)
        assert outcome.failures[0].stage == "archive"
        assert outcome.failures[0].kind is ErrorKind.DATA_LOSS_RISK
        assert h.host.compacted == []
        assert "prune skipped: archive failed this cycle" in outcome.notes
        assert h.state.blocked_until == START + 600

        outcome = h.run(0.86, advance=60)
        assert outcome.fired == []
        assert any(n.startswith("blocked until") for n in outcome.notes)

    def test_rollover_failure_is_a_warning(self, harness):
        h = harness(host=FakeHost(fail_create=True))
        outcome = h.run(0.91)
        assert outcome.ok
        assert not outcome.continuity.rollover_ok
        assert any("code=continuity-failed" in w for w in h.warnings)
        state = h.state
        assert state.last_session_id == "sess-1"
        assert state.last_rollover["rollover_ok"] is False
        assert state.last_rollover["new_session_id"] is None

    def test_inject_failure_links_created_session(self, harness):
        h = harness(host=FakeHost(new_session_id="sess-2", fail_inject=True))
        outcome = h.run(0.91)
        assert h.host.created == ["sess-2"]
        saved = h.watcher.continuity.load(outcome.continuity.map_path)
        assert saved.new_session_id == "sess-2"
        assert saved.rollover_ok is False
        assert saved.error == "inject failed"
        state = h.state
        assert state.last_session_id == "sess-1"
        assert state.last_rollover["new_session_id"] == "sess-2"

    def test_interrupted_prune_recovered(self, harness):
        h = harness()
        StateStore(h.paths.state_file).save(WatcherState(
            phase=Phase.PRUNE_TRIGGERED,
            in_flight="prune",
            last_action_at={"prune": START - 10},
            tier_armed={"prune": False},
        ))
        outcome = h.run(0.5)
        assert outcome.fired == ["prune"]
        assert h.host.compacted == ["sess-1"]
        assert len(h.watcher.ledger.records()) == 1
        assert h.state.in_flight is None

    def test_corrupt_ledger_blocks_destructive_stages(self, harness):
        h = harness()
        h.paths.ledger_path.parent.mkdir(parents=True)
        h.paths.ledger_path.write_text("not json\n")
        outcome = h.run(0.86)
        assert not outcome.ok
        assert any(w.startswith("MOON_WARN code=ledger-read-failed") for w in h.warnings)
        assert h.host.compacted == []
        assert h.paths.ledger_path.read_text() == "not json\n"

    def test_usage_unavailable(self, harness):
        h = harness()
        h.usage.fail = True
        outcome = h.run()
        assert [f.stage for f in outcome.failures] == ["usage"]
        assert outcome.fired == []


class TestDistill:
    def test_idle_trigger(self, harness):
        h = harness(distill={"mode": "idle", "idle_secs": 360, "max_per_cycle": 5}, watcher={"cooldown_secs": 0})
        outcome = h.run(0.82)
        assert outcome.distilled == []
        assert "idle distill waiting for idle window" in outcome.notes

        outcome = h.run(0.5, advance=400)
        assert len(outcome.distilled) == 1
        assert outcome.continuity is None
        assert h.host.created == []
        assert h.state.pending_distill_queue == []

    def test_idle_window_restarts_on_each_new_archive(self, tmp_path, harness):
        h = harness(distill={"mode": "idle", "idle_secs": 360, "max_per_cycle": 5}, watcher={"cooldown_secs": 0})
        first = h.run(0.82).archive
        write_session(tmp_path / "sessions", extra="more")
        second = h.run(0.82, advance=10).archive
        assert not second.deduped
        assert second.record.archive_path != first.record.archive_path
        assert h.state.last_archive_created_at == START + 10

        outcome = h.run(0.5, advance=355)
        assert outcome.distilled == []
        assert "idle distill waiting for idle window" in outcome.notes
        assert len(h.state.pending_distill_queue) == 2

        outcome = h.run(0.5, advance=10)
        assert sorted(d.archive_ref for d in outcome.distilled) == sorted(
            [first.record.archive_path, second.record.archive_path]
        )
        assert h.state.pending_distill_queue == []

    def test_chunk_failure_falls_back_locally(self, tmp_path, harness):
        messages = [(f"m{i}", "user", f"Decision {i}: " + "x" * 600) for i in range(4)]
        h = harness(
            llm_provider=MockLLMProvider(['{"summary": "- remote part", "anchors": []}', provider_error()]),
            distill={"chunk_chars": 1000},
        )
        write_session(tmp_path / "sessions", messages=messages)
        outcome = h.run(0.91)
        assert outcome.ok
        assert outcome.distilled[0].provider == "remote"
        assert any(w.startswith("MOON_WARN code=distill-chunk-failed stage=distill") for w in h.warnings)

    def test_manual_distill_is_idempotent(self, harness):
        h = harness()
        produced = h.watcher.manual_distill(h.source)
        assert produced is not None
        assert produced.summary_path.endswith("2025-10-09.md")
        assert h.watcher.manual_distill(h.source) is None
        assert h.host.created == []
        assert h.watcher.ledger.records()[0].distilled


class TestRetention:
    def test_cold_distilled_archive_deleted(self, tmp_path, harness):
        h = harness()
        old = make_record(tmp_path, "a" * 64, START - 45 * DAY)
        h.watcher.ledger.record_created(old)
        h.watcher.ledger.mark_indexed(old.content_hash)
        h.watcher.ledger.mark_distilled(old.content_hash, "/moon/memory/old.md", "local")
        h.watcher.archive_map.upsert(old, updated_at=old.created_at)

        outcome = h.run(0.5)
        assert outcome.retention.deleted == [old.archive_path]
        assert h.index.refreshed == 1
        assert h.watcher.ledger.get(old.content_hash) is None
        assert h.watcher.status()["archives"]["deleted"] == 1


class TestEntryPoints:
    def test_lock_held(self, harness):
        h = harness()
        with WatcherLock(h.paths.lock_file, mode="daemon"):
            with pytest.raises(LockHeldError):
                h.watcher.run_once()

    def test_daemon_max_cycles(self, harness):
        h = harness()
        assert h.watcher.run_daemon(max_cycles=1) == 1
        assert h.watcher.audit.events()[-1]["phase"] == "cycle"

    def test_daemon_stops_on_event(self, harness):
        h = harness()
        stop = threading.Event()
        original = h.usage.get_usage

        def get_usage():
            stop.set()
            return original()

        h.usage.get_usage = get_usage
        assert h.watcher.run_daemon(stop_event=stop) == 1

    def test_daemon_survives_crashing_cycle(self, harness):
        h = harness()

        def explode():
            raise RuntimeError("boom")

        h.usage.get_usage = explode
        assert h.watcher.run_daemon(max_cycles=1) == 1
        assert h.watcher.audit.events()[-1]["status"] == "crashed"

    def test_recall(self, harness):
        h = harness(index=FakeIndex(results=[{"path": "/a.md", "snippet": "COPY export", "score": 0.7}]))
        result = h.watcher.recall("postgres")
        assert result.collection == "history"
        assert result.matches[0].snippet == "COPY export"
        assert h.index.searches == [("history", "postgres")]

    def test_status(self, harness):
        h = harness()
        h.run(0.82)
        status = h.watcher.status()
        assert status["archives"] == {"live": 1, "indexed": 1, "distilled": 0, "deleted": 0}
        assert status["state"]["phase"] == "cooldown"
        assert status["lock"]["held"] is False

    def test_stop_without_daemon(self, harness):
        h = harness()
        assert stop_daemon(h.paths.lock_file) is None
