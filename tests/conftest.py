"""Shared fixtures for the harness tests."""

import os
import stat
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from devharness.config import DEFAULT_READY_SENTINEL
from devharness.errors import SourceError


def write_script(path: Path, body: str) -> Path:
    """Write an executable Python script run by the current interpreter."""
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class CountingListener:
    """Listener that records refresh calls and returns a canned result."""

    def __init__(self, result: SourceError | None = None, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.calls = 0
        self.call_times: list[float] = []
        self._lock = threading.Lock()

    def refresh(self) -> SourceError | None:
        with self._lock:
            self.calls += 1
            self.call_times.append(time.monotonic())
        if self.delay:
            time.sleep(self.delay)
        return self.result


@pytest.fixture
def ready_app(tmp_path: Path) -> Path:
    """An app that prints the ready sentinel after 100ms and then serves forever."""
    return write_script(
        tmp_path / "ready_app",
        f"""
        import sys, time
        time.sleep(0.1)
        print("{DEFAULT_READY_SENTINEL} " + sys.argv[1], flush=True)
        while True:
            time.sleep(1)
        """,
    )


@pytest.fixture
def silent_app(tmp_path: Path) -> Path:
    """An app that never announces readiness and never exits."""
    return write_script(
        tmp_path / "silent_app",
        """
        import time
        while True:
            time.sleep(1)
        """,
    )


@pytest.fixture
def crashing_app(tmp_path: Path) -> Path:
    """An app that exits with status 3 before becoming ready."""
    return write_script(
        tmp_path / "crashing_app",
        """
        import sys
        print("starting up", flush=True)
        sys.exit(3)
        """,
    )


@pytest.fixture
def http_app(tmp_path: Path) -> Path:
    """A tiny HTTP app honouring -port= and announcing when it listens."""
    return write_script(
        tmp_path / "http_app",
        f"""
        import sys
        from http.server import BaseHTTPRequestHandler, HTTPServer

        port = int(next(a for a in sys.argv[1:] if a.startswith("-port=")).split("=", 1)[1])

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                body = ("hello from " + self.path).encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain")
                self.send_header("Content-Length", str(len(body)))
                self.send_header("X-Seen-Forwarded-For", self.headers.get("X-Forwarded-For", ""))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, *args):
                pass

        server = HTTPServer(("127.0.0.1", port), Handler)
        print("{DEFAULT_READY_SENTINEL} " + str(port), flush=True)
        server.serve_forever()
        """,
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove HARNESS_* variables that could leak into Settings."""
    for key in list(os.environ):
        if key.startswith("HARNESS_"):
            monkeypatch.delenv(key)
    return monkeypatch
