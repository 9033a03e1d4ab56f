"""Rebuild scheduling across watchers: debouncing, serial and eager dispatch."""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..errors import ProcessKillError, SourceError
from .handler import IGNORED_EVENT_TYPES, ChangeEvent, ChangeWatcher, WatchedRoot
from .listener import Listener, accepts_file

logger = logging.getLogger(__name__)

RefreshResult = SourceError | None


@dataclass
class ListenerBinding:
    """A listener paired with the watcher that covers its roots."""

    listener: Listener
    watcher: ChangeWatcher
    eager_thread: threading.Thread | None = None

    @property
    def roots(self) -> list[WatchedRoot]:
        """Roots covered by the watcher."""
        return self.watcher.roots


@dataclass
class DebounceState:
    """The one open debounce window of a coordinator, if any.

    deadline is None while no window is open. The owner of an open window
    performs the refresh; waiters share its result through ``result``.
    """

    deadline: float | None = None
    waiters: int = 0
    result: Future = field(default_factory=Future)

    def open(self, interval: float) -> None:
        self.deadline = time.monotonic() + interval
        self.waiters = 0
        self.result = Future()

    def extend(self, interval: float) -> None:
        self.deadline = time.monotonic() + interval
        self.waiters += 1

    def close(self) -> None:
        self.deadline = None
        self.waiters = 0

    @property
    def is_open(self) -> bool:
        return self.deadline is not None

    def remaining(self) -> float:
        if self.deadline is None:
            return 0.0
        return self.deadline - time.monotonic()


class RebuildCoordinator:
    """Decide when listeners must refresh and make sure only one refresh runs.

    Listeners are registered with listen(). Pending changes are either pulled
    by notify() (typically once per proxied request) or, in eager mode,
    pushed by a background thread per listener as soon as they arrive.
    """

    def __init__(
        self,
        rebuild_delay: float = 1.0,
        eager: bool = False,
        serial: bool = False,
        poll_timeout: float = 0.5,
        on_fatal: Callable[[ProcessKillError], None] | None = None,
    ):
        """Initialize the coordinator.

        Args:
            rebuild_delay: Debounce window in seconds
            eager: Start a background refresh loop for each listener
            serial: Refresh directly under one lock instead of debouncing
            poll_timeout: How long eager loops block before checking for stop
            on_fatal: Called when a background refresh cannot kill the app;
                without it the error ends the background thread
        """
        self.rebuild_delay = rebuild_delay
        self.eager = eager
        self.serial = serial
        self._poll_timeout = poll_timeout
        self._on_fatal = on_fatal

        self._bindings: list[ListenerBinding] = []
        self._notify_lock = threading.Lock()
        self._state_lock = threading.Condition()
        self._debounce = DebounceState()
        self._stopped = threading.Event()

        # Guarded by _state_lock
        self._force_refresh = True
        self._last_error = -1

    @property
    def force_refresh(self) -> bool:
        """Whether the next notify() rebuilds regardless of pending changes."""
        with self._state_lock:
            return self._force_refresh

    @property
    def bindings(self) -> list[ListenerBinding]:
        """Registered listener bindings, in registration order."""
        return list(self._bindings)

    def listen(self, listener: Listener, *roots: str | Path) -> ListenerBinding:
        """Watch roots (recursively) on behalf of a listener.

        Args:
            listener: Listener to refresh on relevant changes
            roots: Directories or files to watch

        Returns:
            The new binding

        Raises:
            WatchConfigurationError: If a root cannot be watched
        """
        watcher = ChangeWatcher(listener, list(roots))
        watcher.start()
        return self.register(watcher)

    def register(self, watcher: ChangeWatcher) -> ListenerBinding:
        """Add an already started watcher and its listener."""
        binding = ListenerBinding(listener=watcher.listener, watcher=watcher)
        if self.eager:
            binding.eager_thread = threading.Thread(
                target=self._notify_when_updated,
                args=(binding,),
                name="rebuild-eager",
                daemon=True,
            )
            binding.eager_thread.start()
        self._bindings.append(binding)
        return binding

    def stop(self) -> None:
        """Stop eager loops and every watcher."""
        self._stopped.set()
        for binding in self._bindings:
            binding.watcher.stop()
            if binding.eager_thread is not None:
                binding.eager_thread.join(timeout=self._poll_timeout * 2)

    def notify(self) -> RefreshResult:
        """Refresh any listener with pending changes or a previous failure.

        Drains every watcher without blocking. Stops at, and returns, the
        first refresh error.
        """
        if self.serial:
            with self._notify_lock:
                return self._notify()
        return self._notify()

    def _notify(self) -> RefreshResult:
        for index, binding in enumerate(self._bindings):
            events = binding.watcher.drain()
            # Dropped events may have been relevant
            refresh = binding.watcher.take_overflow() or any(
                self.rebuild_required(event, binding.listener) for event in events
            )

            with self._state_lock:
                force = self._force_refresh
                last_error = self._last_error
            logger.debug(
                f"Notify refresh state: index={index}, force={force}, "
                f"refresh={refresh}, last_error={last_error}"
            )
            if not (force or refresh or last_error == index):
                continue

            if self.serial:
                error = binding.listener.refresh()
            else:
                error = self.request_rebuild(binding.listener)

            with self._state_lock:
                if error is not None:
                    self._last_error = index
                    self._force_refresh = True
                    return error
                self._last_error = -1
                self._force_refresh = False
        return None

    def request_rebuild(self, listener: Listener) -> RefreshResult:
        """Ask for a refresh through the debounce window.

        The first caller opens the window and performs the refresh once the
        window has been quiet for rebuild_delay seconds. Callers arriving
        while the window is open push its deadline back and wait for the
        owner's result. Every caller of one window gets the same result.
        """
        with self._state_lock:
            # A pending rebuild keeps force_refresh set until it succeeds.
            self._force_refresh = True
            if self._debounce.is_open:
                logger.info("Found existing rebuild timer running, resetting")
                self._debounce.extend(self.rebuild_delay)
                window = self._debounce.result
            else:
                self._debounce.open(self.rebuild_delay)
                window = None

        if window is not None:
            return window.result()

        logger.info("Waiting for refresh timer to expire")
        with self._state_lock:
            remaining = self._debounce.remaining()
            while remaining > 0:
                self._state_lock.wait(remaining)
                remaining = self._debounce.remaining()

            window = self._debounce.result
            waiters = self._debounce.waiters
            try:
                error = listener.refresh()
            except BaseException as e:
                window.set_exception(e)
                raise
            else:
                window.set_result(error)
            finally:
                self._debounce.close()

            if error is not None:
                logger.info(f"Recording error of last build, rebuild stays on: {error}")
            else:
                self._last_error = -1
                self._force_refresh = False
        logger.info(f"Rebuilt for {waiters + 1} requests, result: {error or 'ok'}")
        return error

    def rebuild_required(self, event: ChangeEvent, listener: Listener) -> bool:
        """Whether a change event should trigger a refresh of the listener."""
        if event.path.name.startswith("."):
            return False
        if event.is_directory or event.event_type in IGNORED_EVENT_TYPES:
            return False
        return accepts_file(listener, event.path)

    def _notify_when_updated(self, binding: ListenerBinding) -> None:
        """Refresh a listener as soon as relevant events arrive."""
        while not self._stopped.is_set():
            event = binding.watcher.next_event(timeout=self._poll_timeout)
            relevant = event is not None and self.rebuild_required(event, binding.listener)
            if not (relevant or binding.watcher.take_overflow()):
                continue

            if self.serial:
                try:
                    with self._notify_lock:
                        error = binding.listener.refresh()
                except ProcessKillError as e:
                    self._fatal(e)
                    return
                if error is not None:
                    logger.error(f"Listener refresh reported error: {error}")
            else:
                # Concurrent requests coalesce in the debounce window.
                threading.Thread(
                    target=self._refresh_in_background,
                    args=(binding.listener,),
                    name="rebuild-request",
                    daemon=True,
                ).start()

    def _refresh_in_background(self, listener: Listener) -> None:
        try:
            error = self.request_rebuild(listener)
        except ProcessKillError as e:
            self._fatal(e)
            return
        except Exception:
            logger.exception("Background refresh failed")
            return
        if error is not None:
            logger.error(f"Listener refresh reported error: {error}")

    def _fatal(self, error: ProcessKillError) -> None:
        logger.critical(f"Cannot kill the app, stopping rebuilds: {error}")
        self._stopped.set()
        if self._on_fatal is None:
            raise error
        self._on_fatal(error)
