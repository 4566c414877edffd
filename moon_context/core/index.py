"""IndexClient: thin wrapper around the external search engine binary."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from ..types import ContractViolationError, IndexUnavailableError
from .command import describe_failure, run_command

logger = logging.getLogger(__name__)


def _is_existing_collection_error(stdout: str, stderr: str) -> bool:
    combined = f"{stdout}\n{stderr}".lower()
    return "collection" in combined and "already exists" in combined


class IndexClient:
    """Registers and searches archive collections.

    Every call is bounded by ``timeout``; failures raise ``IndexUnavailableError``.
    """

    def __init__(self, bin: str = "qmd", timeout: float = 60.0) -> None:
        self.bin = bin
        self.timeout = timeout

    def add(self, collection: str, directory: str | Path) -> str:
        """Register ``directory`` as ``collection``; an existing collection is refreshed.

        Returns "added" or "updated".
        """
        proc = run_command(
            [self.bin, "collection", "add", str(directory), "--name", collection],
            self.timeout,
            IndexUnavailableError,
        )
        if proc.returncode == 0:
            logger.info(f"Index collection '{collection}' added for {directory}")
            return "added"

        if _is_existing_collection_error(proc.stdout or "", proc.stderr or ""):
            self.refresh()
            return "updated"

        raise IndexUnavailableError(f"collection add failed: {describe_failure(proc)}")

    def refresh(self) -> None:
        proc = run_command([self.bin, "update"], self.timeout, IndexUnavailableError)
        if proc.returncode != 0:
            raise IndexUnavailableError(f"index update failed: {describe_failure(proc)}")
        logger.debug("Index refreshed")

    def search(self, collection: str, query: str) -> list[dict]:
        """Run a search and return the raw result items."""
        proc = run_command(
            [self.bin, "search", collection, query, "--json"],
            self.timeout,
            IndexUnavailableError,
        )
        if proc.returncode != 0:
            raise IndexUnavailableError(f"search failed: {describe_failure(proc)}")

        text = (proc.stdout or "").strip()
        if not text:
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ContractViolationError(f"search output is not JSON: {e}") from e

        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get("results", [])
        else:
            raise ContractViolationError(f"unexpected search output type: {type(data).__name__}")
        return [item for item in items if isinstance(item, dict)]
