"""Bounded subprocess execution for external binaries."""

from __future__ import annotations

import logging
import subprocess
import time

from ..types import UnavailableError

logger = logging.getLogger(__name__)

RETRY_BACKOFF = [1.0, 2.0, 4.0]


def run_command(
    argv: list[str],
    timeout: float,
    error_cls: type[UnavailableError] = UnavailableError,
) -> subprocess.CompletedProcess:
    """Run ``argv`` and return the completed process, whatever its exit code.

    Missing binaries and timeouts raise ``error_cls``.
    """
    logger.debug(f"exec: {' '.join(argv)}")
    try:
        return subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise error_cls(f"Binary not found: {argv[0]}") from e
    except subprocess.TimeoutExpired as e:
        raise error_cls(f"`{' '.join(argv)}` timed out after {timeout}s") from e
    except OSError as e:
        raise error_cls(f"Failed to run `{argv[0]}`: {e}") from e


def describe_failure(proc: subprocess.CompletedProcess) -> str:
    out = (proc.stdout or "").strip()
    err = (proc.stderr or "").strip()
    return f"exit {proc.returncode}; stdout: {out[:500]}; stderr: {err[:500]}"


def run_with_retries(
    argv: list[str],
    timeout: float,
    retries: int,
    error_cls: type[UnavailableError] = UnavailableError,
    sleep=time.sleep,
) -> subprocess.CompletedProcess:
    """Run ``argv`` until it exits 0, retrying transient failures with backoff."""
    last_error: Exception | None = None
    attempts = max(1, retries + 1)
    for attempt in range(attempts):
        try:
            proc = run_command(argv, timeout, error_cls)
        except error_cls as e:
            last_error = e
        else:
            if proc.returncode == 0:
                return proc
            last_error = error_cls(f"`{' '.join(argv)}` failed: {describe_failure(proc)}")
        if attempt < attempts - 1:
            sleep(RETRY_BACKOFF[min(attempt, len(RETRY_BACKOFF) - 1)])
    raise last_error or error_cls(f"`{' '.join(argv)}` failed")
