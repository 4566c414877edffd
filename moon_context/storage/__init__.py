from .archive_map import ArchiveMap
from .ledger import Ledger
from .lock import WatcherLock, read_lock_info
from .state import StateStore

__all__ = ["ArchiveMap", "Ledger", "StateStore", "WatcherLock", "read_lock_info"]
