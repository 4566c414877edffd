"""Usage providers: report the active session's context-size ratio.

``HostUsageProvider`` asks the host CLI for live metrics; ``SessionFileUsageProvider``
estimates from the newest session file. ``UsageChain`` tries them in order and
refuses stale snapshots.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

from ..types import UsageProvider, UsageSnapshot, UsageUnavailableError
from .archive import latest_session_file
from .command import describe_failure, run_command

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 200_000

_USED_PATHS = (
    ("usage", "totalTokens"),
    ("usage", "inputTokens"),
    ("tokenUsage", "total"),
    ("context", "usedTokens"),
    ("usedTokens",),
)
_MAX_PATHS = (
    ("limits", "maxTokens"),
    ("context", "maxTokens"),
    ("tokenUsage", "max"),
    ("maxTokens",),
)
_SESSION_USED_PATHS = (
    ("totalTokens",),
    ("inputTokens",),
    ("usage", "totalTokens"),
    ("usage", "inputTokens"),
)
_SESSION_MAX_PATHS = (
    ("contextTokens",),
    ("maxTokens",),
    ("limits", "maxTokens"),
)


def _find_int(root: Any, paths: tuple[tuple[str, ...], ...]) -> int | None:
    for path in paths:
        cursor = root
        for part in path:
            if not isinstance(cursor, dict) or part not in cursor:
                cursor = None
                break
            cursor = cursor[part]
        if isinstance(cursor, (int, float)) and not isinstance(cursor, bool) and cursor >= 0:
            return int(cursor)
    return None


def _epoch_secs(value: Any) -> float | None:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    # host timestamps are milliseconds
    return value / 1000.0 if value > 1e12 else float(value)


def parse_host_usage(raw: str, default_max: int = DEFAULT_MAX_TOKENS) -> dict:
    """Parse host usage JSON into ``{session_id, used, max, observed_at}``.

    Accepts a single-session payload or a ``sessions`` list, in which case the
    most recently updated session with token counts wins.
    """
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise UsageUnavailableError(f"Invalid host usage JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise UsageUnavailableError("Host usage payload is not an object")

    sessions = parsed.get("sessions")
    if isinstance(sessions, list):
        candidates = []
        for entry in sessions:
            if not isinstance(entry, dict):
                continue
            used = _find_int(entry, _SESSION_USED_PATHS)
            if used is None:
                continue
            updated = _epoch_secs(entry.get("updatedAt")) or 0.0
            candidates.append((updated, entry, used))
        if not candidates:
            raise UsageUnavailableError("Host sessions payload missing used token fields")
        updated, entry, used = max(candidates, key=lambda c: c[0])
        session_id = entry.get("key") or entry.get("sessionId") or entry.get("id") or "current"
        return {
            "session_id": str(session_id),
            "used": used,
            "max": _find_int(entry, _SESSION_MAX_PATHS) or default_max,
            "observed_at": _epoch_secs(entry.get("observedAt")),
        }

    used = _find_int(parsed, _USED_PATHS)
    if used is None:
        raise UsageUnavailableError("Host usage payload missing used token fields")
    session_id = parsed.get("sessionId") or parsed.get("id") or parsed.get("key") or "current"
    return {
        "session_id": str(session_id),
        "used": used,
        "max": _find_int(parsed, _MAX_PATHS) or default_max,
        "observed_at": _epoch_secs(parsed.get("observedAt")),
    }


def _ratio(used: int, max_tokens: int) -> float:
    if max_tokens <= 0:
        return 0.0
    return min(1.0, used / max_tokens)


class HostUsageProvider:
    name = "primary"

    def __init__(
        self,
        bin: str,
        args: list[str],
        timeout: float = 15.0,
        default_max: int = DEFAULT_MAX_TOKENS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.bin = bin
        self.args = list(args)
        self.timeout = timeout
        self.default_max = default_max
        self._clock = clock

    def get_usage(self) -> UsageSnapshot:
        proc = run_command([self.bin, *self.args], self.timeout, UsageUnavailableError)
        if proc.returncode != 0:
            raise UsageUnavailableError(f"Host usage command failed: {describe_failure(proc)}")
        parsed = parse_host_usage(proc.stdout or "", self.default_max)
        return UsageSnapshot(
            session_id=parsed["session_id"],
            ratio=_ratio(parsed["used"], parsed["max"]),
            absolute_tokens=parsed["used"],
            max_tokens=parsed["max"],
            observed_at=parsed["observed_at"] or self._clock(),
            source=self.name,
        )


class SessionFileUsageProvider:
    """Estimate usage as bytes // 4 of the newest session file."""

    name = "fallback"

    def __init__(
        self,
        sessions_dir: Path,
        context_window: int = DEFAULT_MAX_TOKENS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sessions_dir = Path(sessions_dir)
        self.context_window = context_window
        self._clock = clock

    def get_usage(self) -> UsageSnapshot:
        path = latest_session_file(self.sessions_dir)
        if path is None:
            raise UsageUnavailableError(f"No session files in {self.sessions_dir}")
        used = path.stat().st_size // 4
        return UsageSnapshot(
            session_id=path.stem,
            ratio=_ratio(used, self.context_window),
            absolute_tokens=used,
            max_tokens=self.context_window,
            observed_at=self._clock(),
            source=self.name,
            session_path=str(path),
        )


class UsageChain:
    """Try providers in order; a failing or stale provider falls through to the next."""

    name = "chain"

    def __init__(
        self,
        providers: list[UsageProvider],
        staleness_secs: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.providers = providers
        self.staleness_secs = staleness_secs
        self._clock = clock

    def get_usage(self) -> UsageSnapshot:
        errors: list[str] = []
        for provider in self.providers:
            try:
                snapshot = provider.get_usage()
            except UsageUnavailableError as e:
                logger.warning(f"Usage provider {provider.name} unavailable: {e}")
                errors.append(f"{provider.name}: {e}")
                continue

            snapshot.freshness = max(0.0, self._clock() - snapshot.observed_at)
            if snapshot.freshness > self.staleness_secs:
                logger.warning(
                    f"Usage from {provider.name} is stale ({snapshot.freshness:.0f}s > "
                    f"{self.staleness_secs}s); ignoring"
                )
                errors.append(f"{provider.name}: stale by {snapshot.freshness:.0f}s")
                continue
            return snapshot

        raise UsageUnavailableError("No usable usage snapshot: " + "; ".join(errors))
