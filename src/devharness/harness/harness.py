"""The harness: rebuild the app on source changes and proxy requests to it."""

import json
import logging
import signal
import socket
import threading
import time
from pathlib import Path
from typing import BinaryIO

import httpx

from ..builder import Builder
from ..config import Settings
from ..errors import (
    AppExitedError,
    AppStartError,
    AppStartupTimeout,
    BuildError,
    ProcessKillError,
    SourceError,
)
from ..watcher import RebuildCoordinator
from .app import App
from .proxy import ProxyServer

logger = logging.getLogger(__name__)

STARTUP_ERROR_TITLE = "App failed to start up"


def get_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def app_run_mode(settings: Settings) -> str:
    """Build the -runMode argument: JSON, or the bare mode name in historic mode."""
    if settings.historic_mode:
        return settings.run_mode
    return json.dumps({"mode": settings.run_mode, "specialUseFlag": settings.log_level == "DEBUG"})


class Harness:
    """Rebuilds and restarts the app when its sources change.

    In proxy mode the harness listens on the configured HTTP port and runs
    the app on an internal port. Every request first flushes pending change
    events, rebuilding and restarting the app if needed; build errors are
    served instead of the app's response. Without the proxy the app listens
    on the HTTP port itself and changes are checked on a fixed interval.
    """

    def __init__(
        self,
        settings: Settings,
        builder: Builder,
        coordinator: RebuildCoordinator | None = None,
        stdout: BinaryIO | None = None,
    ):
        """Initialize the harness.

        Args:
            settings: Harness settings
            builder: Builds the app binary on every refresh
            coordinator: Rebuild coordinator (default: built from settings)
            stdout: Where app output is copied (default: our stdout)
        """
        self._settings = settings
        self._builder = builder
        self._stdout = stdout
        self.use_proxy = settings.use_proxy

        if self.use_proxy:
            self.port = settings.app_port or get_free_port()
        else:
            self.port = settings.http_port
        self.app_url = f"http://127.0.0.1:{self.port}"

        self.coordinator = coordinator or RebuildCoordinator(
            rebuild_delay=settings.rebuild_delay_seconds,
            eager=settings.eager_refresh,
            serial=settings.serial_refresh,
            on_fatal=self.abort,
        )
        self.client = httpx.Client(timeout=httpx.Timeout(None, connect=10.0))
        self.app: App | None = None
        self.last_request_had_error = False

        self._mutex = threading.Lock()
        self._server: ProxyServer | None = None
        self._server_thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._fatal: ProcessKillError | None = None

    @property
    def run_mode(self) -> str:
        """Run mode argument passed to the app."""
        return app_run_mode(self._settings)

    @property
    def server_address(self) -> tuple[str, int] | None:
        """Address the proxy is bound to, once started."""
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return host, port

    @property
    def fatal_error(self) -> ProcessKillError | None:
        """The error that stopped the harness, if any."""
        return self._fatal

    def watch_dir(self, path: Path) -> bool:
        """Skip hidden and ignored directories."""
        name = path.name
        return not name.startswith(".") and name not in self._settings.ignored_dirs

    def watch_file(self, path: Path) -> bool:
        """Only rebuild for configured file types."""
        extensions = self._settings.watch_extensions
        return not extensions or path.suffix in extensions

    def refresh(self) -> SourceError | None:
        """Kill the app, rebuild it and start it again."""
        started = time.monotonic()
        logger.info("Change detected, recompiling")
        error = self._refresh()
        if error is None:
            logger.info(f"Rebuild and restart took {time.monotonic() - started:.2f}s")
        return error

    def _refresh(self) -> SourceError | None:
        with self._mutex:
            if self.app is not None:
                self.app.kill()

            try:
                binary = self._builder.build()
            except SourceError as e:
                logger.error(f"Build detected an error: {e}")
                return e
            except BuildError as e:
                logger.error(f"Build failed: {e}")
                return SourceError(title=STARTUP_ERROR_TITLE, description=str(e))

            self.app = App(
                binary,
                self.port,
                self._settings.effective_import_path,
                self._settings.effective_sentinels,
                stdout=self._stdout,
            )
            try:
                self.app.command(self.run_mode).start(
                    timeout=self._settings.startup_timeout_seconds
                )
            except (AppStartError, AppExitedError, AppStartupTimeout) as e:
                logger.error(f"Could not start application: {e}")
                self.app.kill()
                return SourceError(title=STARTUP_ERROR_TITLE, description=str(e))
        return None

    def notify(self) -> SourceError | None:
        """Rebuild if sources changed or the last build failed."""
        error = self.coordinator.notify()
        self.last_request_had_error = error is not None
        return error

    def start(self) -> None:
        """Watch the code paths, trigger the first build and start serving.

        Raises:
            WatchConfigurationError: If a code path cannot be watched
        """
        self.coordinator.listen(self, *self._settings.effective_code_paths)
        threading.Thread(target=self._notify_and_log, name="initial-build", daemon=True).start()

        if not self.use_proxy:
            return

        addr = (self._settings.http_addr, self._settings.http_port)
        self._server = ProxyServer(addr, self)
        self._server_thread = threading.Thread(
            target=self._server.serve_forever, name="proxy-server", daemon=True
        )
        self._server_thread.start()
        host, port = self.server_address
        logger.info(f"Proxy server is listening on {host or '0.0.0.0'}:{port}")

    def run(self) -> None:
        """Install signal handlers and serve until interrupted."""
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self._handle_signal)
        self.serve()

    def serve(self) -> None:
        """Start the harness and block until stopped, then clean up.

        Raises:
            ProcessKillError: If the app could not be killed; the harness
                stops instead of rebuilding again
        """
        self.start()
        try:
            while not self._stop.wait(self._settings.poll_interval_seconds):
                if not self.use_proxy:
                    self._notify_and_log()
        finally:
            self.shutdown()
        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        """Ask serve() to return."""
        self._stop.set()

    def abort(self, error: ProcessKillError) -> None:
        """Stop the harness because the app could not be killed."""
        logger.critical(f"Stopping harness: {error}")
        if self._fatal is None:
            self._fatal = error
        self._stop.set()

    def shutdown(self) -> None:
        """Stop serving and watching, and kill the app."""
        self._stop.set()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        self.coordinator.stop()
        self.client.close()
        if self.app is not None:
            try:
                self.app.kill()
            except ProcessKillError as e:
                if self._fatal is None:
                    raise
                logger.error(f"App is still running after shutdown: {e}")
        logger.info("Harness stopped")

    def _notify_and_log(self) -> None:
        try:
            error = self.notify()
        except ProcessKillError as e:
            self.abort(e)
            return
        if error is not None:
            logger.error(f"Build failed: {error}")

    def _handle_signal(self, signum: int, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down")
        self.stop()
