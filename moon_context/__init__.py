"""moon-context: context lifecycle watcher for long-lived LLM sessions."""

from .config import load_config, resolve_paths
from .types import (
    ArchiveRecord,
    ContinuityMap,
    CycleOutcome,
    DistillationRecord,
    MoonConfig,
    RecallResult,
    UsageSnapshot,
    WatcherState,
)
from .watcher import Watcher

__version__ = "0.1.0"

__all__ = [
    "Watcher",
    "load_config",
    "resolve_paths",
    "ArchiveRecord",
    "ContinuityMap",
    "CycleOutcome",
    "DistillationRecord",
    "MoonConfig",
    "RecallResult",
    "UsageSnapshot",
    "WatcherState",
]
