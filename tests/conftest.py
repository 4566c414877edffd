"""Shared fixtures for moon-context tests."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from moon_context.config import load_config, resolve_paths
from moon_context.core.archive import projection_path_for
from moon_context.types import (
    ArchiveRecord,
    HostCommandError,
    IndexUnavailableError,
    LLMProviderError,
    UsageSnapshot,
    UsageUnavailableError,
)

START = 1_760_000_000.0  # 2025-10-09 08:53:20 UTC
DAY = 86_400

DEFAULT_MESSAGES = [
    ("m1", "user", "Our goal is to ship the billing export this week."),
    ("m2", "assistant", "We decided to use Postgres COPY for the export."),
    ("m3", "user", "TODO: add retries to the upload step."),
    ("m4", "assistant", "Milestone: schema migration completed."),
]


class FakeClock:
    """Deterministic clock; call it for ``now``."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> float:
        self.now += secs
        return self.now


def write_session(directory: Path, session_id: str = "sess-1", messages=None, extra: str = "") -> Path:
    """Write a JSONL transcript in the host's event format."""
    directory.mkdir(parents=True, exist_ok=True)
    lines = []
    for message_id, role, text in messages or DEFAULT_MESSAGES:
        lines.append(json.dumps({
            "type": "message",
            "id": message_id,
            "message": {"role": role, "content": [{"type": "text", "text": text}]},
        }))
    if extra:
        lines.append(json.dumps({"type": "message", "id": "mx", "message": {"role": "user", "content": extra}}))
    path = directory / f"{session_id}.jsonl"
    path.write_text("\n".join(lines) + "\n")
    return path


def make_record(tmp_path: Path, content_hash: str, created_at: float, **kwargs) -> ArchiveRecord:
    raw_dir = tmp_path / "archives" / "raw"
    raw_dir.mkdir(parents=True, exist_ok=True)
    archive = raw_dir / f"{content_hash}.jsonl"
    archive.write_text('{"type": "message", "message": {"role": "user", "content": "hello"}}\n')
    projection = projection_path_for(archive)
    projection.write_text("---\nmoon_archive_projection: 1\n---\n\n## Signals\n- hello\n")
    fields = {
        "session_id": "sess-1",
        "source_path": str(tmp_path / "sessions" / "sess-1.jsonl"),
        "archive_path": str(archive),
        "projection_path": str(projection),
        "content_hash": content_hash,
        "created_at": created_at,
    }
    fields.update(kwargs)
    return ArchiveRecord(**fields)


class StaticUsage:
    """Usage provider returning a fixed ratio."""

    name = "static"

    def __init__(self, ratio: float, session_id: str = "sess-1", session_path: str | None = None,
                 clock=None, fail: bool = False):
        self.ratio = ratio
        self.session_id = session_id
        self.session_path = session_path
        self.clock = clock or FakeClock()
        self.fail = fail

    def get_usage(self) -> UsageSnapshot:
        if self.fail:
            raise UsageUnavailableError("usage source down")
        return UsageSnapshot(
            session_id=self.session_id,
            ratio=self.ratio,
            absolute_tokens=int(self.ratio * 200_000),
            max_tokens=200_000,
            observed_at=self.clock(),
            source="primary",
            session_path=self.session_path,
        )


class FakeIndex:
    """In-memory stand-in for the qmd client."""

    def __init__(self, results: list[dict] | None = None, fail_add: bool = False,
                 fail_search: bool = False, fail_refresh: bool = False):
        self.results = results or []
        self.fail_add = fail_add
        self.fail_search = fail_search
        self.fail_refresh = fail_refresh
        self.added: list[tuple[str, str]] = []
        self.refreshed = 0
        self.searches: list[tuple[str, str]] = []

    def add(self, collection: str, directory) -> str:
        if self.fail_add:
            raise IndexUnavailableError("qmd unavailable")
        self.added.append((collection, str(directory)))
        return "added"

    def refresh(self) -> None:
        if self.fail_refresh:
            raise IndexUnavailableError("qmd update failed")
        self.refreshed += 1

    def search(self, collection: str, query: str) -> list[dict]:
        self.searches.append((collection, query))
        if self.fail_search:
            raise IndexUnavailableError("qmd search failed")
        return [dict(r) for r in self.results]


class FakeHost:
    """Records host session operations instead of shelling out."""

    def __init__(self, new_session_id: str = "sess-2", fail_compact: bool = False,
                 fail_create: bool = False, fail_inject: bool = False, rollover_command: bool = False):
        self.new_session_id = new_session_id
        self.fail_compact = fail_compact
        self.fail_create = fail_create
        self.fail_inject = fail_inject
        self.rollover_command = rollover_command
        self.on_compact = None
        self.compacted: list[str] = []
        self.created: list[str] = []
        self.injected: list[tuple[str, str]] = []
        self.rollovers: list[tuple[str, str]] = []

    @property
    def has_rollover_command(self) -> bool:
        return self.rollover_command

    def compact_session(self, session_id: str) -> None:
        if self.on_compact is not None:
            self.on_compact(session_id)
        if self.fail_compact:
            raise HostCommandError("compact failed", command=["openclaw"], returncode=1)
        self.compacted.append(session_id)

    def create_session(self) -> str:
        if self.fail_create:
            raise HostCommandError("create failed", command=["openclaw"], returncode=1)
        self.created.append(self.new_session_id)
        return self.new_session_id

    def inject_context(self, session_id: str, block: str) -> None:
        if self.fail_inject:
            raise HostCommandError("inject failed", command=["openclaw"], returncode=1)
        self.injected.append((session_id, block))

    def run_rollover_command(self, old_session_id: str, map_file: str) -> str:
        self.rollovers.append((old_session_id, Path(map_file).read_text()))
        return self.new_session_id


class MockLLMProvider:
    """Mock LLM provider; each response is a string or an exception to raise."""

    def __init__(self, responses: list | None = None):
        self.calls: list[dict] = []
        self.responses = responses or [
            '{"summary": "- Decision: use Postgres COPY", "anchors": [{"message_id": "m2", "offset": 1}]}'
        ]

    def complete(self, system: str, user: str, max_tokens: int) -> str:
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        idx = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[idx]
        if isinstance(response, Exception):
            raise response
        return response


def provider_error(message: str = "HTTP 503: overloaded") -> LLMProviderError:
    return LLMProviderError(message, provider="gemini", status_code=503)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions_dir(tmp_path) -> Path:
    d = tmp_path / "sessions"
    d.mkdir()
    return d


@pytest.fixture
def make_config(tmp_path):
    """Build a validated config rooted in ``tmp_path``; keyword args update sections."""

    def _make(**sections):
        raw = {
            "paths": {
                "moon_home": str(tmp_path / "moon"),
                "sessions_dir": str(tmp_path / "sessions"),
            },
            "distill": {"provider": "local"},
            "host": {"retries": 0},
        }
        for key, value in sections.items():
            raw.setdefault(key, {}).update(value)
        return load_config(config_dict=raw, env=False)

    return _make


@pytest.fixture
def paths(make_config):
    return resolve_paths(make_config())


@pytest.fixture
def warn_stream() -> io.StringIO:
    return io.StringIO()
