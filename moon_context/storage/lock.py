"""WatcherLock: exclusive single-writer lock for the watcher.

The lock is an ``flock`` on ``state/watcher.lock``; the file body records the
holder pid so ``status`` and ``stop`` can find the daemon. The kernel drops the
flock when the holder dies, so a leftover file with a dead pid is a stale lock
and is taken over.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from ..types import LockHeldError

logger = logging.getLogger(__name__)


def _is_pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists but owned by another user
        return True


def read_lock_info(path: Path) -> Optional[Dict[str, Any]]:
    """Read lock metadata, enriched with ``held`` and ``holder_alive``."""
    path = Path(path)
    if not path.is_file():
        return None
    try:
        info = json.loads(path.read_text(encoding="utf-8") or "{}")
    except json.JSONDecodeError as e:
        logger.debug(f"Could not parse lock file {path}: {e}")
        info = {}

    held = False
    fd = os.open(str(path), os.O_RDONLY)
    try:
        fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        fcntl.flock(fd, fcntl.LOCK_UN)
    except BlockingIOError:
        held = True
    finally:
        os.close(fd)

    info["held"] = held
    info["holder_alive"] = _is_pid_alive(info.get("pid"))
    return info


class WatcherLock:
    """Context manager around a non-blocking exclusive flock."""

    def __init__(self, path: Path, mode: str = "once") -> None:
        self.path = Path(path)
        self.mode = mode
        self._fd: int | None = None
        self.recovered_stale_pid: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            info = read_lock_info(self.path) or {}
            pid = info.get("pid")
            raise LockHeldError(
                f"Another watcher holds {self.path} (pid {pid})", pid=pid
            ) from None

        previous = os.read(fd, 4096).decode("utf-8", errors="replace")
        if previous.strip():
            try:
                prev_pid = json.loads(previous).get("pid")
            except json.JSONDecodeError:
                prev_pid = None
            if prev_pid and prev_pid != os.getpid():
                self.recovered_stale_pid = prev_pid
                logger.warning(f"Recovered stale watcher lock left by pid {prev_pid}")

        body = json.dumps({
            "pid": os.getpid(),
            "acquired_at": time.time(),
            "mode": self.mode,
        })
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, body.encode("utf-8"))
        os.fsync(fd)
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> WatcherLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
