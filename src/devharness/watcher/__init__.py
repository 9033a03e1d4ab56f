"""File watching and rebuild scheduling for the development harness."""

from .coordinator import DebounceState, ListenerBinding, RebuildCoordinator
from .handler import ChangeEvent, ChangeWatcher, WatchedRoot, resolve_root
from .listener import DiscerningListener, Listener

__all__ = [
    # Watching
    "ChangeEvent",
    "ChangeWatcher",
    "WatchedRoot",
    "resolve_root",
    # Listeners
    "DiscerningListener",
    "Listener",
    # Scheduling
    "DebounceState",
    "ListenerBinding",
    "RebuildCoordinator",
]
