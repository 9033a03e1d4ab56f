"""Filesystem watching for source roots, one observer per listener binding."""

import logging
import os
import queue
import threading
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ConfigDict
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from ..errors import WatchConfigurationError
from .listener import Listener, accepts_dir

logger = logging.getLogger(__name__)

# Events that never change file contents
IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})


class WatchedRoot(BaseModel):
    """A root registered with a ChangeWatcher."""

    model_config = ConfigDict(frozen=True)

    path: Path
    is_symlink: bool
    resolved_path: Path


@dataclass(frozen=True)
class ChangeEvent:
    """A filesystem change reported by a ChangeWatcher."""

    path: Path
    event_type: str
    is_directory: bool = False


def resolve_root(path: str | Path) -> WatchedRoot:
    """Resolve a root to its real location.

    Args:
        path: Directory or file to watch, possibly a symlink

    Returns:
        WatchedRoot describing the original and resolved path

    Raises:
        WatchConfigurationError: If the root does not exist or cannot be stat'ed
    """
    path = Path(path)
    try:
        is_symlink = path.is_symlink()
        resolved = path.resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise WatchConfigurationError(f"Failed to stat watched path {path}: {e}") from e
    return WatchedRoot(path=path, is_symlink=is_symlink, resolved_path=resolved)


class ChangeEventHandler(FileSystemEventHandler):
    """Forwards watchdog events to the owning ChangeWatcher."""

    def __init__(self, watcher: "ChangeWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        """Handle every event type."""
        src_path = Path(os.fsdecode(event.src_path))
        if isinstance(event, (DirDeletedEvent, DirMovedEvent)):
            self._watcher.remove_dir(src_path)
        elif isinstance(event, DirCreatedEvent):
            self._watcher.add_created_dir(src_path)
        self._watcher.enqueue(ChangeEvent(src_path, event.event_type, event.is_directory))

        if isinstance(event, FileSystemMovedEvent) and event.dest_path:
            dest_path = Path(os.fsdecode(event.dest_path))
            if isinstance(event, DirMovedEvent):
                self._watcher.add_created_dir(dest_path)
            self._watcher.enqueue(ChangeEvent(dest_path, event.event_type, event.is_directory))


class ChangeWatcher:
    """Watch a set of roots for one listener.

    Directories are registered one by one (non-recursively) so that a
    listener can exclude whole subtrees. Events are buffered in a bounded
    queue until pulled with drain() or next_event().
    """

    QUEUE_SIZE = 100

    def __init__(self, listener: Listener, roots: list[str | Path]):
        """Initialize the watcher.

        Args:
            listener: Listener consulted for directory selection
            roots: Directories or files to watch
        """
        self.listener = listener
        self.roots: list[WatchedRoot] = []
        self._requested_roots = [Path(r) for r in roots]

        self._handler = ChangeEventHandler(self)
        self._observer = Observer()
        self._events: queue.Queue[ChangeEvent] = queue.Queue(maxsize=self.QUEUE_SIZE)
        self._lock = threading.Lock()
        self._watched_dirs: dict[Path, ObservedWatch] = {}
        self._watched_files: set[Path] = set()
        self._running = False
        self._overflowed = False

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    @property
    def watched_dirs(self) -> frozenset[Path]:
        """Directories currently registered with the observer."""
        with self._lock:
            return frozenset(self._watched_dirs)

    @property
    def watched_files(self) -> frozenset[Path]:
        """Single files registered as roots."""
        with self._lock:
            return frozenset(self._watched_files)

    def start(self) -> None:
        """Walk every root, register its directories and start observing.

        Raises:
            WatchConfigurationError: If a root cannot be stat'ed, walked or watched
        """
        if self._running:
            logger.warning("ChangeWatcher is already running")
            return

        for requested in self._requested_roots:
            root = resolve_root(requested)
            self.roots.append(root)
            if root.is_symlink:
                logger.debug(f"Resolved symlinked root {root.path} -> {root.resolved_path}")

            if root.resolved_path.is_dir():
                self._walk(root.resolved_path, strict=True, check_top=False)
            else:
                self._add_file(root.resolved_path)

        self._observer.start()
        self._running = True
        logger.info(
            f"ChangeWatcher started: {len(self._watched_dirs)} directories, "
            f"{len(self._watched_files)} files"
        )

    def stop(self) -> None:
        """Stop observing."""
        if not self._running:
            return

        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._running = False
        logger.info("ChangeWatcher stopped")

    def drain(self) -> list[ChangeEvent]:
        """Return every pending event without blocking."""
        events = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    def next_event(self, timeout: float | None = None) -> ChangeEvent | None:
        """Block until an event is available or the timeout expires."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def take_overflow(self) -> bool:
        """Whether events were dropped since the last call; clears the flag."""
        with self._lock:
            overflowed = self._overflowed
            self._overflowed = False
        return overflowed

    def enqueue(self, event: ChangeEvent) -> None:
        """Buffer a content change in a watched directory or to a watched file.

        Directory events, read-only events and dot-files are never buffered.
        If the buffer is full the change is dropped and take_overflow()
        reports it, so the consumer can rebuild without knowing what changed.
        """
        if (
            event.is_directory
            or event.event_type in IGNORED_EVENT_TYPES
            or event.path.name.startswith(".")
        ):
            return
        with self._lock:
            watched = (
                event.path in self._watched_files
                or event.path.parent in self._watched_dirs
                or event.path in self._watched_dirs
            )
        if not watched:
            return

        try:
            self._events.put_nowait(event)
        except queue.Full:
            with self._lock:
                self._overflowed = True
            logger.warning(f"Event buffer full, dropping change to {event.path}")

    def add_created_dir(self, path: Path) -> None:
        """Start watching a directory created below a watched directory."""
        with self._lock:
            if path.parent not in self._watched_dirs:
                return
        self._walk(path, strict=False, check_top=True)

    def remove_dir(self, path: Path) -> None:
        """Forget a deleted or moved-away directory and everything below it."""
        with self._lock:
            gone = {p: w for p, w in self._watched_dirs.items() if p == path or path in p.parents}
            for p in gone:
                del self._watched_dirs[p]
        for p, watch in gone.items():
            try:
                self._observer.unschedule(watch)
            except KeyError:
                pass
            logger.debug(f"Stopped watching removed directory {p}")

    def _walk(self, top: Path, strict: bool, check_top: bool) -> None:
        """Register top and every accepted directory below it, following symlinks once."""
        visited: set[Path] = set()

        def on_error(error: OSError) -> None:
            if strict:
                raise WatchConfigurationError(f"Error walking {error.filename}: {error}") from error
            logger.warning(f"Error walking {error.filename}: {error}")

        for dirpath, dirnames, _ in os.walk(top, onerror=on_error, followlinks=True):
            current = Path(dirpath)
            real = current.resolve()
            asked = check_top or current != top
            if real in visited or (asked and not accepts_dir(self.listener, current)):
                dirnames[:] = []
                continue
            visited.add(real)
            self._add_dir(real, strict)

    def _add_dir(self, path: Path, strict: bool) -> None:
        with self._lock:
            if path in self._watched_dirs:
                return
        try:
            watch = self._observer.schedule(self._handler, str(path), recursive=False)
        except OSError as e:
            if strict:
                raise WatchConfigurationError(f"Failed to watch {path}: {e}") from e
            logger.warning(f"Failed to watch {path}: {e}")
            return
        with self._lock:
            self._watched_dirs[path] = watch

    def _add_file(self, path: Path) -> None:
        # Watch the parent directory; enqueue() filters down to the file itself.
        try:
            self._observer.schedule(self._handler, str(path.parent), recursive=False)
        except OSError as e:
            raise WatchConfigurationError(f"Failed to watch {path}: {e}") from e
        with self._lock:
            self._watched_files.add(path)