"""Tests for the rebuild coordinator."""

import queue
import threading
import time
from pathlib import Path

import pytest

from conftest import CountingListener
from devharness.errors import ProcessKillError, SourceError
from devharness.watcher import ChangeEvent, DebounceState, RebuildCoordinator


class FakeWatcher:
    """Stands in for ChangeWatcher with events pushed by the test."""

    def __init__(self, listener):
        self.listener = listener
        self.roots = []
        self._events: queue.Queue[ChangeEvent] = queue.Queue()
        self.stopped = False
        self.overflowed = False

    def push(self, path: str, event_type: str = "modified", is_directory: bool = False):
        self._events.put(ChangeEvent(Path(path), event_type, is_directory))

    def drain(self):
        events = []
        while not self._events.empty():
            events.append(self._events.get_nowait())
        return events

    def next_event(self, timeout=None):
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def take_overflow(self):
        overflowed, self.overflowed = self.overflowed, False
        return overflowed

    def stop(self):
        self.stopped = True


class PickyListener(CountingListener):
    """Only cares about .go files and never descends into vendor/."""

    def watch_dir(self, path: Path) -> bool:
        return path.name != "vendor"

    def watch_file(self, path: Path) -> bool:
        return path.suffix == ".go"


def run_concurrently(target, count: int, stagger: float = 0.0) -> list:
    """Run target in count threads, optionally staggered, and collect results."""
    results: list = [None] * count

    def worker(i):
        results[i] = target()

    threads = []
    for i in range(count):
        t = threading.Thread(target=worker, args=(i,))
        threads.append(t)
        t.start()
        if stagger:
            time.sleep(stagger)
    for t in threads:
        t.join(timeout=10)
    return results


class TestDebounceState:
    """Tests for DebounceState."""

    def test_starts_closed(self):
        """Test that no window is open initially."""
        state = DebounceState()
        assert not state.is_open
        assert state.remaining() == 0.0

    def test_extend_counts_waiters_and_moves_deadline(self):
        """Test that extending a window pushes the deadline and counts waiters."""
        state = DebounceState()
        state.open(0.5)
        first_deadline = state.deadline
        time.sleep(0.01)
        state.extend(0.5)

        assert state.is_open
        assert state.waiters == 1
        assert state.deadline > first_deadline

        state.close()
        assert not state.is_open
        assert state.waiters == 0


class TestRequestRebuild:
    """Tests for the debounced rebuild path."""

    def test_concurrent_requests_share_one_refresh(self):
        """Test that N concurrent requests cause exactly one refresh."""
        error = SourceError(title="Compilation Error", description="boom")
        listener = CountingListener(result=error)
        coordinator = RebuildCoordinator(rebuild_delay=0.2)
        barrier = threading.Barrier(8)

        def request():
            barrier.wait()
            return coordinator.request_rebuild(listener)

        results = run_concurrently(request, 8)

        assert listener.calls == 1
        assert all(r is error for r in results)

    def test_burst_extends_window(self):
        """Test that events at 0, 50 and 90ms with a 100ms window rebuild once at ~190ms."""
        result = SourceError(title="Compilation Error", description="shared")
        listener = CountingListener(result=result)
        coordinator = RebuildCoordinator(rebuild_delay=0.1)
        start = time.monotonic()
        results: list = [None] * 3

        def caller(i, delay):
            time.sleep(delay)
            results[i] = coordinator.request_rebuild(listener)

        threads = [
            threading.Thread(target=caller, args=(i, delay))
            for i, delay in enumerate((0.0, 0.05, 0.09))
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert listener.calls == 1
        elapsed = listener.call_times[0] - start
        assert 0.17 <= elapsed < 0.5
        assert results[0] is results[1] is results[2] is result

    def test_sequential_requests_open_new_windows(self):
        """Test that a request after a finished window rebuilds again."""
        listener = CountingListener()
        coordinator = RebuildCoordinator(rebuild_delay=0.01)

        assert coordinator.request_rebuild(listener) is None
        assert coordinator.request_rebuild(listener) is None
        assert listener.calls == 2

    def test_request_arriving_during_refresh_waits_for_next_window(self):
        """Test that a request during an in-flight refresh does not join it."""
        listener = CountingListener(delay=0.2)
        coordinator = RebuildCoordinator(rebuild_delay=0.01)

        first = threading.Thread(target=coordinator.request_rebuild, args=(listener,))
        first.start()
        time.sleep(0.1)  # first refresh is now running
        coordinator.request_rebuild(listener)
        first.join(timeout=5)

        assert listener.calls == 2
        assert listener.call_times[1] - listener.call_times[0] >= 0.2

    def test_refresh_exception_reaches_every_waiter(self):
        """Test that an exception raised by refresh is re-raised for all callers."""

        class Exploding:
            def refresh(self):
                raise RuntimeError("builder crashed")

        coordinator = RebuildCoordinator(rebuild_delay=0.1)
        errors: list = []

        def request():
            try:
                coordinator.request_rebuild(Exploding())
            except RuntimeError as e:
                errors.append(e)

        run_concurrently(request, 3, stagger=0.02)

        assert len(errors) == 3
        assert len({id(e) for e in errors}) == 1
        # The window is closed again
        listener = CountingListener()
        assert coordinator.request_rebuild(listener) is None

    def test_failure_keeps_force_refresh(self):
        """Test that a failed rebuild leaves force_refresh set."""
        listener = CountingListener(result=SourceError(description="bad"))
        coordinator = RebuildCoordinator(rebuild_delay=0.01)

        coordinator.request_rebuild(listener)
        assert coordinator.force_refresh

        listener.result = None
        coordinator.request_rebuild(listener)
        assert not coordinator.force_refresh


class TestNotify:
    """Tests for pull-based notification."""

    def _coordinator(self, listener, **kwargs):
        coordinator = RebuildCoordinator(rebuild_delay=0.01, **kwargs)
        watcher = FakeWatcher(listener)
        coordinator.register(watcher)
        return coordinator, watcher

    def test_first_notify_refreshes(self):
        """Test that the first notify rebuilds even without events."""
        listener = CountingListener()
        coordinator, _ = self._coordinator(listener)

        assert coordinator.notify() is None
        assert listener.calls == 1

        assert coordinator.notify() is None
        assert listener.calls == 1

    def test_relevant_change_refreshes(self):
        """Test that a file change triggers a rebuild."""
        listener = CountingListener()
        coordinator, watcher = self._coordinator(listener)
        coordinator.notify()

        watcher.push("/app/controllers/app.go")
        coordinator.notify()

        assert listener.calls == 2

    def test_dropped_events_force_refresh(self):
        """Test that changes lost to a full buffer still cause one rebuild."""
        listener = CountingListener()
        coordinator, watcher = self._coordinator(listener)
        coordinator.notify()

        watcher.overflowed = True
        coordinator.notify()
        coordinator.notify()

        assert listener.calls == 2

    def test_failed_rebuild_retried_without_events(self):
        """Test that after a failure the next notify rebuilds with zero events."""
        error = SourceError(title="Compilation Error", description="x")
        listener = CountingListener(result=error)
        coordinator, _ = self._coordinator(listener)

        assert coordinator.notify() is error
        assert coordinator.force_refresh

        listener.result = None
        assert coordinator.notify() is None
        assert listener.calls == 2
        assert not coordinator.force_refresh

        coordinator.notify()
        assert listener.calls == 2

    def test_dotfiles_and_directories_ignored(self):
        """Test that dot-files, directory events and open/close events are ignored."""
        listener = CountingListener()
        coordinator, watcher = self._coordinator(listener)
        coordinator.notify()

        watcher.push("/app/.app.go.swp")
        watcher.push("/app/controllers", is_directory=True)
        watcher.push("/app/app.go", event_type="opened")
        watcher.push("/app/app.go", event_type="closed_no_write")
        coordinator.notify()

        assert listener.calls == 1

    def test_discerning_listener_filters_files(self):
        """Test that watch_file rejections do not trigger rebuilds."""
        listener = PickyListener()
        coordinator, watcher = self._coordinator(listener)
        coordinator.notify()

        watcher.push("/app/README.md")
        coordinator.notify()
        assert listener.calls == 1

        watcher.push("/app/main.go")
        coordinator.notify()
        assert listener.calls == 2

    def test_serial_mode_refreshes_without_debounce(self):
        """Test that serial notify calls refresh directly."""
        listener = CountingListener()
        coordinator = RebuildCoordinator(rebuild_delay=30.0, serial=True)
        coordinator.register(FakeWatcher(listener))

        start = time.monotonic()
        coordinator.notify()

        assert listener.calls == 1
        assert time.monotonic() - start < 5.0

    def test_concurrent_notifies_rebuild_once(self):
        """Test that requests arriving together after a change share one rebuild."""
        listener = CountingListener()
        coordinator, _ = self._coordinator(listener)
        coordinator.rebuild_delay = 0.2

        results = run_concurrently(coordinator.notify, 5, stagger=0.01)

        assert listener.calls == 1
        assert results == [None] * 5

    def test_first_error_stops_iteration(self):
        """Test that notify returns the first listener error and skips the rest."""
        error = SourceError(description="first fails")
        failing = CountingListener(result=error)
        other = CountingListener()
        coordinator = RebuildCoordinator(rebuild_delay=0.01)
        coordinator.register(FakeWatcher(failing))
        coordinator.register(FakeWatcher(other))

        assert coordinator.notify() is error
        assert other.calls == 0


class TestEagerMode:
    """Tests for eager background refreshes."""

    def test_event_triggers_refresh_without_notify(self):
        """Test that an eager binding rebuilds as soon as an event arrives."""
        listener = CountingListener()
        coordinator = RebuildCoordinator(rebuild_delay=0.05, eager=True, poll_timeout=0.05)
        watcher = FakeWatcher(listener)
        coordinator.register(watcher)

        try:
            for name in ("a.go", "b.go", "c.go"):
                watcher.push(f"/app/{name}")

            deadline = time.monotonic() + 5
            while listener.calls == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            time.sleep(0.2)
        finally:
            coordinator.stop()

        assert listener.calls == 1
        assert watcher.stopped

    def test_irrelevant_event_ignored(self):
        """Test that eager mode skips dot-files."""
        listener = CountingListener()
        coordinator = RebuildCoordinator(rebuild_delay=0.01, eager=True, poll_timeout=0.05)
        watcher = FakeWatcher(listener)
        coordinator.register(watcher)

        try:
            watcher.push("/app/.hidden")
            time.sleep(0.2)
        finally:
            coordinator.stop()

        assert listener.calls == 0

    def test_kill_failure_is_fatal(self):
        """Test that a refresh unable to kill the app stops the eager loop."""
        fatal: list[ProcessKillError] = []

        class UnkillableListener(CountingListener):
            def refresh(self):
                super().refresh()
                raise ProcessKillError("Failed to kill app server 1234: permission denied")

        listener = UnkillableListener()
        coordinator = RebuildCoordinator(
            rebuild_delay=0.01, eager=True, poll_timeout=0.05, on_fatal=fatal.append
        )
        watcher = FakeWatcher(listener)
        binding = coordinator.register(watcher)

        try:
            watcher.push("/app/app.go")
            deadline = time.monotonic() + 5
            while not fatal and time.monotonic() < deadline:
                time.sleep(0.01)

            assert len(fatal) == 1
            assert "permission denied" in str(fatal[0])
            binding.eager_thread.join(timeout=1)
            assert not binding.eager_thread.is_alive()

            watcher.push("/app/app.go")
            time.sleep(0.2)
            assert listener.calls == 1
        finally:
            coordinator.stop()


@pytest.mark.parametrize("name", [".git", ".DS_Store", ".#app.go"])
def test_rebuild_required_rejects_dotfiles(name):
    """Test that any dot-file name is irrelevant."""
    coordinator = RebuildCoordinator()
    event = ChangeEvent(Path("/app") / name, "modified")
    assert not coordinator.rebuild_required(event, CountingListener())
