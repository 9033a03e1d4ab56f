"""Supervising the app process and proxying requests to it."""

from .app import App, AppCommand, ProcessState, StartupListeningWriter
from .harness import Harness, app_run_mode, get_free_port
from .proxy import ProxyRequestHandler, ProxyServer, render_error_page

__all__ = [
    # Process supervision
    "App",
    "AppCommand",
    "ProcessState",
    "StartupListeningWriter",
    # Harness
    "Harness",
    "app_run_mode",
    "get_free_port",
    # Proxy
    "ProxyRequestHandler",
    "ProxyServer",
    "render_error_page",
]
