"""HostSession: the host CLI's session operations (compact, create, inject, rollover)."""

from __future__ import annotations

import json
import logging
import tempfile
import time
from pathlib import Path
from typing import Callable

from ..types import HostCommandError, HostConfig
from .command import run_with_retries

logger = logging.getLogger(__name__)


def _fill(template: list[str], **values: str) -> list[str]:
    return [part.format(**values) for part in template]


class HostSession:
    """Runs host commands from argv templates (``{session_id}``, ``{file}`` placeholders)."""

    def __init__(self, config: HostConfig, sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config
        self._sleep = sleep

    def _run(self, args: list[str]) -> str:
        proc = run_with_retries(
            [self.config.bin, *args],
            timeout=self.config.timeout_secs,
            retries=self.config.retries,
            error_cls=HostCommandError,
            sleep=self._sleep,
        )
        return proc.stdout or ""

    def compact_session(self, session_id: str) -> None:
        self._run(_fill(self.config.compact_args, session_id=session_id))
        logger.info(f"Host compacted session {session_id}")

    def create_session(self) -> str:
        out = self._run(list(self.config.create_args)).strip()
        if not out:
            raise HostCommandError("Host create-session returned no session id")
        try:
            data = json.loads(out)
        except json.JSONDecodeError:
            return out.splitlines()[-1].strip()
        if isinstance(data, dict):
            new_id = data.get("sessionId") or data.get("id") or data.get("key")
            if new_id:
                return str(new_id)
        raise HostCommandError(f"Host create-session output has no id: {out[:200]}")

    def inject_context(self, session_id: str, block: str) -> None:
        with tempfile.NamedTemporaryFile(
            "w", suffix=".md", prefix="moon-continuity-", delete=False, encoding="utf-8"
        ) as f:
            f.write(block)
            path = f.name
        try:
            self._run(_fill(self.config.inject_args, session_id=session_id, file=path))
        finally:
            Path(path).unlink(missing_ok=True)
        logger.info(f"Injected {len(block)} chars into session {session_id}")

    @property
    def has_rollover_command(self) -> bool:
        return bool(self.config.rollover_command)

    def run_rollover_command(self, old_session_id: str, map_file: str) -> str:
        """Single external command replacing create+inject; prints the new session id."""
        argv = _fill(self.config.rollover_command, session_id=old_session_id, file=map_file)
        proc = run_with_retries(
            argv,
            timeout=self.config.timeout_secs,
            retries=self.config.retries,
            error_cls=HostCommandError,
            sleep=self._sleep,
        )
        lines = [line.strip() for line in (proc.stdout or "").splitlines() if line.strip()]
        if not lines:
            raise HostCommandError("Rollover command printed no session id", command=argv)
        return lines[-1]
