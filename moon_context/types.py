"""All dataclasses, Protocols, enums, and exceptions for moon-context."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol, Union, runtime_checkable


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    """Failure taxonomy; decides how the watcher reacts to a stage error."""
    UNAVAILABLE = "unavailable"  # retry next cycle
    CONTRACT_VIOLATION = "contract_violation"  # fall back or skip
    DATA_LOSS_RISK = "data_loss_risk"  # halt destructive stages, back off
    NO_MATCH = "no_match"  # not an error, only used for reporting


class MoonError(Exception):
    kind: ErrorKind = ErrorKind.UNAVAILABLE


class UnavailableError(MoonError):
    kind = ErrorKind.UNAVAILABLE


class UsageUnavailableError(UnavailableError):
    pass


class IndexUnavailableError(UnavailableError):
    pass


class HostCommandError(UnavailableError):
    def __init__(self, message: str, command: list[str] | None = None, returncode: int | None = None):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode


class RecallError(UnavailableError):
    pass


class LLMProviderError(UnavailableError):
    def __init__(self, message: str, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class DistillationError(UnavailableError):
    """Every distiller in the chain failed."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class ContractViolationError(MoonError):
    kind = ErrorKind.CONTRACT_VIOLATION


class ConfigError(ContractViolationError):
    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class DataLossRiskError(MoonError):
    kind = ErrorKind.DATA_LOSS_RISK


class RetentionError(DataLossRiskError):
    """Raised when a delete is attempted without a distillation marker."""


class LedgerReadError(DataLossRiskError):
    def __init__(self, message: str, path: str = "", line_no: int | None = None):
        super().__init__(message)
        self.path = path
        self.line_no = line_no


class LockHeldError(MoonError):
    def __init__(self, message: str, pid: int | None = None):
        super().__init__(message)
        self.pid = pid


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------

@dataclass
class UsageSnapshot:
    """Context usage of the active session at a point in time."""
    session_id: str
    ratio: float
    absolute_tokens: int
    max_tokens: int
    observed_at: float  # epoch seconds
    source: str  # "primary" or "fallback"
    freshness: float = 0.0  # seconds between observation and evaluation
    session_path: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> UsageSnapshot:
        return cls(
            session_id=data.get("session_id", ""),
            ratio=float(data.get("ratio", 0.0)),
            absolute_tokens=int(data.get("absolute_tokens", 0)),
            max_tokens=int(data.get("max_tokens", 0)),
            observed_at=float(data.get("observed_at", 0.0)),
            source=data.get("source", "primary"),
            freshness=float(data.get("freshness", 0.0)),
            session_path=data.get("session_path"),
        )


@runtime_checkable
class UsageProvider(Protocol):
    name: str

    def get_usage(self) -> UsageSnapshot: ...


# ---------------------------------------------------------------------------
# Archive & Ledger
# ---------------------------------------------------------------------------

@dataclass
class ArchiveRecord:
    """Current state of one archive, derived from ledger replay."""
    session_id: str
    source_path: str
    archive_path: str
    projection_path: str
    content_hash: str
    created_at: float
    collection: str = "history"
    indexed: bool = False
    distilled: bool = False
    distilled_at: float | None = None
    summary_path: str | None = None
    deleted: bool = False

    @property
    def day(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).strftime("%Y-%m-%d")

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ArchiveResult:
    record: ArchiveRecord
    deduped: bool = False


@dataclass
class LedgerEntry:
    """One append-only ledger line."""
    seq: int
    op: str  # "created", "indexed", "index_failed", "distilled", "deleted"
    content_hash: str
    at: float
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "op": self.op,
            "content_hash": self.content_hash,
            "at": self.at,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> LedgerEntry:
        return cls(
            seq=int(raw["seq"]),
            op=str(raw["op"]),
            content_hash=str(raw["content_hash"]),
            at=float(raw.get("at", 0.0)),
            data=raw.get("data") or {},
        )


LEDGER_OPS = ("created", "indexed", "index_failed", "distilled", "deleted")


# ---------------------------------------------------------------------------
# Transcript & Distillation
# ---------------------------------------------------------------------------

@dataclass
class TranscriptMessage:
    message_id: str
    role: str
    text: str
    offset: int  # line number in the archived transcript


@dataclass
class MessageAnchor:
    message_id: str
    offset: int


@dataclass
class DistillationRecord:
    archive_ref: str
    session_id: str
    produced_at: float
    provider: str  # "remote" or "local"
    summary_text: str
    content_hash: str = ""
    message_anchors: list[MessageAnchor] = field(default_factory=list)
    summary_path: str | None = None


@runtime_checkable
class Distiller(Protocol):
    name: str

    def produce(self, archive: ArchiveRecord) -> DistillationRecord: ...


@dataclass
class ManualTrigger:
    """Distill only on the distill tier or an explicit command."""
    mode: str = "manual"


@dataclass
class IdleTrigger:
    """Distill the pending queue once no archive was created for ``idle_secs``."""
    idle_secs: int = 21600
    mode: str = "idle"


DistillTrigger = Union[ManualTrigger, IdleTrigger]


# ---------------------------------------------------------------------------
# Continuity
# ---------------------------------------------------------------------------

@dataclass
class ContinuityMap:
    """Handoff artifact written once per rollover attempt."""
    old_session_id: str
    new_session_id: str | None
    summary_bullets: list[str] = field(default_factory=list)
    archive_refs: list[str] = field(default_factory=list)
    memory_refs: list[str] = field(default_factory=list)
    rollover_ok: bool = False
    created_at: float = 0.0
    error: str | None = None
    map_path: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> ContinuityMap:
        return cls(
            old_session_id=data.get("old_session_id", ""),
            new_session_id=data.get("new_session_id"),
            summary_bullets=list(data.get("summary_bullets", [])),
            archive_refs=list(data.get("archive_refs", [])),
            memory_refs=list(data.get("memory_refs", [])),
            rollover_ok=bool(data.get("rollover_ok", False)),
            created_at=float(data.get("created_at", 0.0)),
            error=data.get("error"),
            map_path=data.get("map_path"),
        )

    def render(self) -> str:
        """Render the map as the leading context block of a new session."""
        lines = [
            "# Continuity",
            f"Previous session: {self.old_session_id}",
            "",
            "## Summary",
        ]
        lines.extend(f"- {b}" for b in self.summary_bullets)
        if self.archive_refs:
            lines.append("")
            lines.append("## Archives")
            lines.extend(f"- {ref}" for ref in self.archive_refs)
        if self.memory_refs:
            lines.append("")
            lines.append("## Daily notes")
            lines.extend(f"- {ref}" for ref in self.memory_refs)
        lines.append("")
        lines.append("Use recall to search archived history before asking the user to repeat it.")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Watcher state
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    NORMAL = "normal"
    ARCHIVE_TRIGGERED = "archive_triggered"
    PRUNE_TRIGGERED = "prune_triggered"
    DISTILL_TRIGGERED = "distill_triggered"
    COOLDOWN = "cooldown"


class Tier(str, Enum):
    ARCHIVE = "archive"
    PRUNE = "prune"
    DISTILL = "distill"


TIER_ORDER = (Tier.ARCHIVE, Tier.PRUNE, Tier.DISTILL)

TIER_PHASE = {
    Tier.ARCHIVE: Phase.ARCHIVE_TRIGGERED,
    Tier.PRUNE: Phase.PRUNE_TRIGGERED,
    Tier.DISTILL: Phase.DISTILL_TRIGGERED,
}


@dataclass
class WatcherState:
    """Persisted watcher state. One file per environment."""
    phase: Phase = Phase.NORMAL
    in_flight: str | None = None  # tier whose side effects have not completed
    last_action_at: dict[str, float] = field(default_factory=dict)
    tier_armed: dict[str, bool] = field(default_factory=dict)
    cooldown_until: float | None = None
    blocked_until: float | None = None
    pending_distill_queue: list[str] = field(default_factory=list)
    last_usage: UsageSnapshot | None = None
    last_session_id: str | None = None
    last_archive_created_at: float | None = None
    last_rollover: dict | None = None
    index_refresh_pending: bool = False
    heartbeat_at: float | None = None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "in_flight": self.in_flight,
            "last_action_at": dict(self.last_action_at),
            "tier_armed": dict(self.tier_armed),
            "cooldown_until": self.cooldown_until,
            "blocked_until": self.blocked_until,
            "pending_distill_queue": list(self.pending_distill_queue),
            "last_usage": self.last_usage.to_dict() if self.last_usage else None,
            "last_session_id": self.last_session_id,
            "last_archive_created_at": self.last_archive_created_at,
            "last_rollover": self.last_rollover,
            "index_refresh_pending": self.index_refresh_pending,
            "heartbeat_at": self.heartbeat_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> WatcherState:
        usage = data.get("last_usage")
        return cls(
            phase=Phase(data.get("phase", Phase.NORMAL.value)),
            in_flight=data.get("in_flight"),
            last_action_at={k: float(v) for k, v in (data.get("last_action_at") or {}).items()},
            tier_armed={k: bool(v) for k, v in (data.get("tier_armed") or {}).items()},
            cooldown_until=data.get("cooldown_until"),
            blocked_until=data.get("blocked_until"),
            pending_distill_queue=list(data.get("pending_distill_queue") or []),
            last_usage=UsageSnapshot.from_dict(usage) if usage else None,
            last_session_id=data.get("last_session_id"),
            last_archive_created_at=data.get("last_archive_created_at"),
            last_rollover=data.get("last_rollover"),
            index_refresh_pending=bool(data.get("index_refresh_pending", False)),
            heartbeat_at=data.get("heartbeat_at"),
        )


# ---------------------------------------------------------------------------
# Recall
# ---------------------------------------------------------------------------

@dataclass
class RecallMatch:
    archive_ref: str
    snippet: str
    score: float
    metadata: dict = field(default_factory=dict)


@dataclass
class RecallResult:
    query: str
    collection: str
    matches: list[RecallMatch] = field(default_factory=list)
    empty: bool = True

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "collection": self.collection,
            "empty": self.empty,
            "matches": [asdict(m) for m in self.matches],
        }

    def to_context_block(self, max_chars: int = 4000) -> str:
        """Render matches as a context block ready for injection."""
        if self.empty:
            return f'<recall query="{self.query}" matches="0" />'
        parts = [f'<recall query="{self.query}" matches="{len(self.matches)}">']
        used = 0
        for m in self.matches:
            snippet = m.snippet.strip()
            if used + len(snippet) > max_chars:
                snippet = snippet[: max(0, max_chars - used)]
            parts.append(f'<match archive="{m.archive_ref}" score="{m.score:.3f}">')
            parts.append(snippet)
            parts.append("</match>")
            used += len(snippet)
            if used >= max_chars:
                break
        parts.append("</recall>")
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Cycle outcome
# ---------------------------------------------------------------------------

@dataclass
class StageFailure:
    stage: str
    kind: ErrorKind
    message: str


@dataclass
class RetentionReport:
    active: int = 0
    warm: int = 0
    cold: int = 0
    deleted: list[str] = field(default_factory=list)
    kept_without_marker: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    index_refresh_error: str | None = None


@dataclass
class CycleOutcome:
    """What a single watcher cycle did."""
    started_at: float
    usage: UsageSnapshot | None = None
    fired: list[str] = field(default_factory=list)
    archive: ArchiveResult | None = None
    pruned: bool = False
    distilled: list[DistillationRecord] = field(default_factory=list)
    continuity: ContinuityMap | None = None
    retention: RetentionReport | None = None
    failures: list[StageFailure] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


# ---------------------------------------------------------------------------
# LLM provider
# ---------------------------------------------------------------------------

@runtime_checkable
class LLMProvider(Protocol):
    def complete(self, system: str, user: str, max_tokens: int) -> str: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class PathsConfig:
    moon_home: str = "~/MOON"
    archives_dir: str = ""  # empty = <moon_home>/archives
    memory_dir: str = ""
    logs_dir: str = ""
    state_dir: str = ""
    continuity_dir: str = ""
    sessions_dir: str = "~/.openclaw/agents/main/sessions"


@dataclass
class ThresholdConfig:
    archive_ratio: float = 0.80
    prune_ratio: float = 0.85
    distill_ratio: float = 0.90
    emergency_ratio: float = 0.95
    rearm_policy: str = "cooldown"  # "cooldown", "hysteresis", "either"
    hysteresis_margin: float = 0.05


@dataclass
class WatcherConfig:
    poll_interval_secs: int = 30
    cooldown_secs: int = 300
    data_loss_backoff_secs: int = 600


@dataclass
class UsageConfig:
    provider: str = "primary"  # "primary" (with fallback) or "fallback" only
    staleness_secs: int = 300
    context_window: int = 200_000
    timeout_secs: float = 15.0


@dataclass
class IndexConfig:
    bin: str = "qmd"
    collection: str = "history"
    timeout_secs: float = 60.0
    max_results: int = 10


@dataclass
class HostConfig:
    bin: str = "openclaw"
    usage_args: list[str] = field(default_factory=lambda: ["sessions", "current", "--json"])
    compact_args: list[str] = field(default_factory=lambda: ["sessions", "compact", "{session_id}"])
    create_args: list[str] = field(default_factory=lambda: ["sessions", "new", "--json"])
    inject_args: list[str] = field(default_factory=lambda: ["sessions", "inject", "{session_id}", "--file", "{file}"])
    rollover_command: list[str] = field(default_factory=list)
    timeout_secs: float = 60.0
    retries: int = 2


@dataclass
class DistillConfig:
    mode: str = "manual"  # "manual" or "idle"
    idle_secs: int = 21600
    max_per_cycle: int = 1
    require_indexed: bool = True
    provider: str = "gemini"  # name in ``providers``; "local" disables remote
    model: str = "gemini-2.5-flash-lite"
    max_tokens: int = 2048
    temperature: float = 0.2
    timeout_secs: float = 45.0
    chunk_chars: int = 60_000


@dataclass
class RetentionConfig:
    active_days: int = 7
    warm_days: int = 30
    cold_days: int = 31
    enabled: bool = True


@dataclass
class MoonPaths:
    """Resolved filesystem layout under MOON_HOME."""
    moon_home: Path
    archives_dir: Path
    raw_dir: Path
    ledger_path: Path
    memory_dir: Path
    logs_dir: Path
    audit_log: Path
    state_dir: Path
    state_file: Path
    lock_file: Path
    continuity_dir: Path
    maps_dir: Path
    archive_map_path: Path
    sessions_dir: Path


@dataclass
class MoonConfig:
    """Top-level configuration."""
    version: str = "1.0"
    paths: PathsConfig = field(default_factory=PathsConfig)
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    host: HostConfig = field(default_factory=HostConfig)
    distill: DistillConfig = field(default_factory=DistillConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    providers: dict = field(default_factory=dict)

    @property
    def distill_trigger(self) -> DistillTrigger:
        if self.distill.mode == "idle":
            return IdleTrigger(idle_secs=self.distill.idle_secs)
        return ManualTrigger()
