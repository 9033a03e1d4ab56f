"""Running the built app binary as a supervised child process."""

import logging
import queue
import subprocess
import sys
import threading
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable

from ..errors import AppExitedError, AppStartError, AppStartupTimeout, ProcessKillError

logger = logging.getLogger(__name__)

KILL_WAIT_SECONDS = 10.0


class ProcessState(str, Enum):
    """Lifecycle of an app process."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"


class StartupListeningWriter:
    """Copies app output to a destination and watches it for a ready sentinel.

    The app announces that it accepts connections by printing a fixed line
    (e.g. "Revel engine is listening on ..."). on_ready is called once, the
    first time any sentinel is seen.
    """

    def __init__(self, dest: BinaryIO, sentinels: list[str], on_ready: Callable[[], None]):
        self._dest = dest
        self._sentinels = [s.encode() for s in sentinels]
        self._on_ready = on_ready
        self._keep = max((len(s) for s in self._sentinels), default=1) - 1
        self._tail = b""
        self.ready = False

    def write(self, data: bytes) -> int:
        if not self.ready:
            window = self._tail + data
            if any(s in window for s in self._sentinels):
                self.ready = True
                self._tail = b""
                self._on_ready()
            else:
                # A sentinel may be split across writes.
                self._tail = window[-self._keep :] if self._keep else b""

        self._dest.write(data)
        self._dest.flush()
        return len(data)


class AppCommand:
    """One launch of the app binary.

    The process handle never leaves this class. state moves from
    NOT_STARTED to RUNNING on start() and to EXITED once the process ends or
    is killed.
    """

    def __init__(
        self,
        binary_path: Path,
        port: int,
        run_mode: str,
        import_path: str,
        sentinels: list[str],
        stdout: BinaryIO | None = None,
    ):
        """Build the command line for the app.

        Args:
            binary_path: Executable produced by the build
            port: Port the app should listen on
            run_mode: Run mode string passed to the app
            import_path: Import path of the app
            sentinels: Output substrings that mean the app is ready
            stdout: Where app output is copied (default: our stdout)
        """
        self.binary_path = Path(binary_path)
        self.port = port
        self.args = [
            str(self.binary_path),
            f"-port={port}",
            f"-importPath={import_path}",
            f"-runMode={run_mode}",
        ]
        self._sentinels = sentinels
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ProcessState:
        """Current lifecycle state of the process."""
        if self._process is None:
            return ProcessState.NOT_STARTED
        if self._process.poll() is None:
            return ProcessState.RUNNING
        return ProcessState.EXITED

    @property
    def pid(self) -> int | None:
        """Process id, once started."""
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        """Exit status, once exited."""
        return self._process.poll() if self._process is not None else None

    def start(self, timeout: float = 60.0) -> None:
        """Start the app and wait until it announces it is ready.

        Args:
            timeout: Seconds to wait for the ready sentinel

        Raises:
            AppStartError: If the binary cannot be executed
            AppExitedError: If the app exits before it is ready
            AppStartupTimeout: If the app is not ready in time (it is killed)
        """
        if self._process is not None:
            raise AppStartError(f"App command already started (pid {self._process.pid})")

        outcomes: queue.Queue[tuple[str, int | None]] = queue.Queue()
        writer = StartupListeningWriter(
            self._stdout, self._sentinels, lambda: outcomes.put(("ready", None))
        )

        logger.info(f"Exec app: {' '.join(self.args)}")
        try:
            process = subprocess.Popen(self.args, stdout=subprocess.PIPE)
        except OSError as e:
            raise AppStartError(f"Error running {self.binary_path}: {e}") from e
        with self._lock:
            self._process = process

        threading.Thread(
            target=self._copy_output, args=(process, writer), name="app-stdout", daemon=True
        ).start()
        threading.Thread(
            target=self._wait_exit, args=(process, outcomes), name="app-wait", daemon=True
        ).start()

        try:
            outcome, returncode = outcomes.get(timeout=timeout)
        except queue.Empty:
            logger.warning(
                f"Killing app process {process.pid}, it did not respond after {timeout}s"
            )
            self.kill()
            raise AppStartupTimeout(f"app timed out after {timeout}s") from None

        if outcome == "exited":
            raise AppExitedError(returncode)
        logger.info(f"App is ready (pid {process.pid}, port {self.port})")

    def run(self) -> None:
        """Run the app inline until it exits.

        Raises:
            AppStartError: If the binary cannot be executed
            AppExitedError: If the app exits with a non-zero status
        """
        logger.info(f"Exec app: {' '.join(self.args)}")
        try:
            completed = subprocess.run(self.args)
        except OSError as e:
            raise AppStartError(f"Error running {self.binary_path}: {e}") from e
        if completed.returncode != 0:
            raise AppExitedError(completed.returncode)

    def kill(self) -> None:
        """Kill the app if it is running. Safe to call repeatedly.

        Raises:
            ProcessKillError: If the process cannot be killed
        """
        with self._lock:
            process = self._process
            if process is None or process.poll() is not None:
                return

            logger.info(f"Killing app server pid {process.pid}")
            try:
                process.kill()
                process.wait(timeout=KILL_WAIT_SECONDS)
            except (OSError, subprocess.TimeoutExpired) as e:
                raise ProcessKillError(f"Failed to kill app server {process.pid}: {e}") from e

    def _copy_output(self, process: subprocess.Popen, writer: StartupListeningWriter) -> None:
        with process.stdout:
            # Chunks, not lines: the sentinel may not end with a newline.
            for chunk in iter(lambda: process.stdout.read1(4096), b""):
                try:
                    writer.write(chunk)
                except (OSError, ValueError) as e:
                    logger.debug(f"Could not copy app output: {e}")

    def _wait_exit(self, process: subprocess.Popen, outcomes: queue.Queue) -> None:
        returncode = process.wait()
        outcomes.put(("exited", returncode))


class App:
    """Configuration for running the built app; hands out AppCommands."""

    def __init__(
        self,
        binary_path: Path,
        port: int,
        import_path: str,
        sentinels: list[str],
        stdout: BinaryIO | None = None,
    ):
        self.binary_path = Path(binary_path)
        self.port = port
        self.import_path = import_path
        self._sentinels = sentinels
        self._stdout = stdout
        self._cmd: AppCommand | None = None

    @property
    def cmd(self) -> AppCommand | None:
        """The last command returned by command()."""
        return self._cmd

    @property
    def is_running(self) -> bool:
        """Whether the last command's process is alive."""
        return self._cmd is not None and self._cmd.state is ProcessState.RUNNING

    def command(self, run_mode: str) -> AppCommand:
        """Return a command to run the app with the current configuration."""
        self._cmd = AppCommand(
            self.binary_path,
            self.port,
            run_mode,
            self.import_path,
            self._sentinels,
            stdout=self._stdout,
        )
        return self._cmd

    def kill(self) -> None:
        """Kill the last command returned, if it is running."""
        if self._cmd is not None:
            self._cmd.kill()
