"""Audit trail (JSON lines) and single-line machine-readable warnings."""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Callable, TextIO

logger = logging.getLogger(__name__)

WARN_PREFIX = "MOON_WARN"
WARN_FIELDS = ("code", "stage", "action", "session", "archive", "source", "retry", "reason", "err")

INDEX_FAILED = "index-failed"
DISTILL_FAILED = "distill-failed"
DISTILL_CHUNK_FAILED = "distill-chunk-failed"
CONTINUITY_FAILED = "continuity-failed"
RETENTION_DELETE_FAILED = "retention-delete-failed"
LEDGER_READ_FAILED = "ledger-read-failed"

WARNING_CODES = (
    INDEX_FAILED,
    DISTILL_FAILED,
    DISTILL_CHUNK_FAILED,
    CONTINUITY_FAILED,
    RETENTION_DELETE_FAILED,
    LEDGER_READ_FAILED,
)


def sanitize_value(value: object) -> str:
    """Collapse whitespace runs to ``_`` and drop non-printables; empty becomes ``na``."""
    out: list[str] = []
    prev_sep = False
    for ch in str(value) if value is not None else "":
        if ch.isspace():
            if out and not prev_sep:
                out.append("_")
                prev_sep = True
        elif ch.isprintable():
            out.append(ch)
            prev_sep = False
    text = "".join(out).strip("_")
    return text or "na"


def format_warning(
    code: str,
    stage: str,
    action: str,
    session: str = "",
    archive: str = "",
    source: str = "",
    retry: str = "",
    reason: str = "",
    err: str = "",
) -> str:
    values = {
        "code": code,
        "stage": stage,
        "action": action,
        "session": session,
        "archive": archive,
        "source": source,
        "retry": retry,
        "reason": reason,
        "err": err,
    }
    fields = " ".join(f"{name}={sanitize_value(values[name])}" for name in WARN_FIELDS)
    return f"{WARN_PREFIX} {fields}"


def emit_warning(code: str, stage: str, action: str, stream: TextIO | None = None, **fields: str) -> str:
    """Write one warning line to stderr and return it."""
    if code not in WARNING_CODES:
        raise ValueError(f"Unknown warning code: {code}")
    line = format_warning(code, stage, action, **fields)
    out = stream or sys.stderr
    print(line, file=out, flush=True)
    return line


class AuditLog:
    """Append-only audit events: ``{at_epoch_secs, phase, status, message}``."""

    def __init__(self, path: Path, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self._clock = clock

    def record(self, phase: str, status: str, message: str, **extra) -> dict:
        event = {
            "at_epoch_secs": int(self._clock()),
            "phase": phase,
            "status": status,
            "message": message,
        }
        event.update(extra)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, sort_keys=True, default=str) + "\n")
        logger.debug(f"audit {phase}/{status}: {message}")
        return event

    def events(self) -> list[dict]:
        if not self.path.is_file():
            return []
        out = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                out.append(json.loads(line))
        return out
