"""Tests for distillers, candidate selection and daily notes."""

import os

import pytest

from conftest import DAY, START, FakeClock, MockLLMProvider, make_record, provider_error, write_session

from moon_context.core.archive import projection_path_for
from moon_context.core.distiller import (
    DailyNotes,
    DistillerChain,
    LocalDistiller,
    RemoteDistiller,
    chunk_messages,
    parse_distill_response,
    select_distill_candidates,
)
from moon_context.core.transcript import read_transcript
from moon_context.types import (
    ArchiveRecord,
    ContractViolationError,
    DistillationError,
    DistillationRecord,
    LLMProviderError,
    MessageAnchor,
)


@pytest.fixture
def archive(tmp_path, sessions_dir) -> ArchiveRecord:
    source = write_session(sessions_dir)
    return ArchiveRecord(
        session_id="sess-1",
        source_path=str(source),
        archive_path=str(source),
        projection_path=str(projection_path_for(source)),
        content_hash="a" * 64,
        created_at=START,
        indexed=True,
    )


class TestParseResponse:
    def test_plain_json(self):
        parsed = parse_distill_response('{"summary": "- a", "anchors": [{"message_id": "m1", "offset": 0}]}')
        assert parsed["summary"] == "- a"
        assert parsed["anchors"] == [MessageAnchor(message_id="m1", offset=0)]

    def test_fenced_with_thinking(self):
        response = '```json\n<think>hmm</think>{"summary": "- b"}\n```'
        parsed = parse_distill_response(response)
        assert parsed["summary"] == "- b"
        assert parsed["anchors"] == []

    def test_json_embedded_in_prose(self):
        parsed = parse_distill_response('Here you go: {"summary": "- c", "anchors": []} thanks')
        assert parsed["summary"] == "- c"

    def test_missing_summary(self):
        with pytest.raises(ContractViolationError):
            parse_distill_response('{"anchors": []}')

    def test_not_json(self):
        with pytest.raises(ContractViolationError):
            parse_distill_response("I cannot help with that")

    def test_bad_anchor(self):
        with pytest.raises(ContractViolationError):
            parse_distill_response('{"summary": "- d", "anchors": [{"offset": "x"}]}')


class TestLocalDistiller:
    def test_categorises_signal_lines(self, archive):
        record = LocalDistiller(clock=FakeClock()).produce(archive)
        assert record.provider == "local"
        assert "### Goals" in record.summary_text
        assert "### Decisions" in record.summary_text
        assert "- We decided to use Postgres COPY for the export." in record.summary_text
        assert "### Open tasks" in record.summary_text
        assert {a.message_id for a in record.message_anchors} >= {"m1", "m2", "m3"}
        assert record.content_hash == archive.content_hash

    def test_highlights_when_no_keywords(self, tmp_path):
        source = write_session(tmp_path / "s", "plain", messages=[("p1", "user", "hello there"), ("p2", "assistant", "hi")])
        messages = read_transcript(source)
        summary, anchors = LocalDistiller().summarize(messages)
        assert summary.startswith("### Highlights")
        assert "- hello there" in summary
        assert [a.message_id for a in anchors] == ["p1", "p2"]

    def test_empty_transcript(self):
        summary, anchors = LocalDistiller().summarize([])
        assert "no textual signals extracted" in summary
        assert anchors == []


class TestRemoteDistiller:
    def test_uses_provider_response(self, archive):
        provider = MockLLMProvider()
        record = RemoteDistiller(provider, clock=FakeClock()).produce(archive)
        assert record.provider == "remote"
        assert record.summary_text == "- Decision: use Postgres COPY"
        assert record.message_anchors == [MessageAnchor(message_id="m2", offset=1)]
        assert "[m2@1] assistant: We decided" in provider.calls[0]["user"]

    def test_failed_chunk_falls_back_locally(self, tmp_path):
        long_messages = [(f"m{i}", "user", f"Decision {i}: " + "x" * 600) for i in range(4)]
        source = write_session(tmp_path / "s", "long", messages=long_messages)
        archive = ArchiveRecord("long", str(source), str(source), str(source), "b" * 64, START)
        provider = MockLLMProvider([
            '{"summary": "- remote part", "anchors": []}',
            provider_error(),
        ])
        failed = []
        distiller = RemoteDistiller(
            provider, chunk_chars=1000,
            on_chunk_failure=lambda a, i, e: failed.append((a.content_hash, i, str(e))),
        )
        record = distiller.produce(archive)
        assert len(provider.calls) >= 2
        assert record.provider == "remote"
        assert "- remote part" in record.summary_text
        assert "### Decisions" in record.summary_text
        assert failed[0][0] == "b" * 64
        assert failed[0][1] == 1

    def test_all_chunks_failing_raises(self, archive):
        provider = MockLLMProvider([provider_error()])
        with pytest.raises(LLMProviderError):
            RemoteDistiller(provider).produce(archive)

    def test_malformed_response_is_contract_violation(self, archive):
        provider = MockLLMProvider(["not json"])
        with pytest.raises(ContractViolationError):
            RemoteDistiller(provider).produce(archive)

    def test_chunking(self, tmp_path):
        source = write_session(tmp_path / "s", "c", messages=[(f"m{i}", "user", "y" * 400) for i in range(5)])
        chunks = chunk_messages(read_transcript(source), 1000)
        assert [len(c) for c in chunks] == [2, 2, 1]


class TestDistillerChain:
    def test_remote_failure_falls_back_to_local(self, archive):
        chain = DistillerChain([RemoteDistiller(MockLLMProvider([provider_error()])), LocalDistiller()])
        assert chain.produce(archive).provider == "local"

    def test_all_failing_raises(self, tmp_path):
        missing = ArchiveRecord("s", "x", str(tmp_path / "gone.jsonl"), "x.md", "c" * 64, START)
        chain = DistillerChain([RemoteDistiller(MockLLMProvider()), LocalDistiller()])
        with pytest.raises(DistillationError) as exc:
            chain.produce(missing)
        assert len(exc.value.errors) == 2


class TestCandidateSelection:
    def test_oldest_day_first_capped(self, tmp_path):
        newer = make_record(tmp_path, "n" * 64, START, indexed=True)
        older = make_record(tmp_path, "o" * 64, START - 2 * DAY, indexed=True)
        middle = make_record(tmp_path, "m" * 64, START - DAY, indexed=True)
        picked = select_distill_candidates([newer, older, middle], max_per_cycle=2)
        assert [r.content_hash for r in picked] == ["o" * 64, "m" * 64]

    def test_filters(self, tmp_path):
        ok = make_record(tmp_path, "a" * 64, START, indexed=True)
        unindexed = make_record(tmp_path, "b" * 64, START - 10)
        done = make_record(tmp_path, "c" * 64, START - 20, indexed=True, distilled=True)
        gone = make_record(tmp_path, "d" * 64, START - 30, indexed=True)
        os.unlink(gone.archive_path)
        records = [ok, unindexed, done, gone]
        assert [r.content_hash for r in select_distill_candidates(records, 10)] == ["a" * 64]
        relaxed = select_distill_candidates(records, 10, require_indexed=False)
        assert [r.content_hash for r in relaxed] == ["b" * 64, "a" * 64]


class TestDailyNotes:
    def _record(self, content_hash="a" * 64):
        return DistillationRecord(
            archive_ref="/moon/archives/raw/sess-1.jsonl",
            session_id="sess-1",
            produced_at=START,
            provider="local",
            summary_text="### Decisions\n- use COPY",
            content_hash=content_hash,
            message_anchors=[MessageAnchor("m2", 1)],
        )

    def test_first_write_has_frontmatter(self, tmp_path):
        notes = DailyNotes(tmp_path / "memory")
        path = notes.append(self._record())
        assert path.name == "2025-10-09.md"
        text = path.read_text()
        assert text.startswith("---\n")
        assert "type: daily-notes" in text
        assert "<!-- moon-archive:" + "a" * 64 + " -->" in text
        assert "- anchors: m2@1" in text
        assert "- use COPY" in text

    def test_append_is_idempotent_per_archive(self, tmp_path):
        notes = DailyNotes(tmp_path / "memory")
        notes.append(self._record())
        notes.append(self._record())
        notes.append(self._record("b" * 64))
        text = notes.path_for(START).read_text()
        assert text.count("moon-archive:" + "a" * 64) == 1
        assert text.count("moon-archive:" + "b" * 64) == 1
        assert text.count("type: daily-notes") == 1
