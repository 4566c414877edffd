"""StateStore: atomic JSON persistence of WatcherState."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

from ..types import WatcherState
from .helpers import atomic_write_json

logger = logging.getLogger(__name__)


class StateStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> WatcherState:
        """Load persisted state. Missing file yields a fresh state.

        An unreadable file is moved aside (kept for inspection) and a fresh
        state is returned.
        """
        if not self.path.is_file():
            return WatcherState()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return WatcherState.from_dict(data)
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
            aside = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
            self.path.replace(aside)
            logger.error(f"Watcher state unreadable ({e}); moved to {aside}, starting fresh")
            return WatcherState()

    def save(self, state: WatcherState) -> None:
        atomic_write_json(self.path, state.to_dict())
