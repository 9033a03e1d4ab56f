"""Receivers of filesystem change notifications."""

from pathlib import Path
from typing import Protocol, runtime_checkable

from ..errors import SourceError


@runtime_checkable
class Listener(Protocol):
    """Something that can be refreshed when watched files change."""

    def refresh(self) -> SourceError | None:
        """Rebuild after a relevant change.

        Returns:
            None on success, or the error to serve on the current request
        """
        ...


@runtime_checkable
class DiscerningListener(Listener, Protocol):
    """A listener that chooses which directories and files it watches."""

    def watch_dir(self, path: Path) -> bool:
        """Return False to exclude the directory and everything below it."""
        ...

    def watch_file(self, path: Path) -> bool:
        """Return False to ignore changes to the file."""
        ...


def accepts_dir(listener: Listener, path: Path) -> bool:
    """Ask a listener whether to descend into a directory (default: yes)."""
    if isinstance(listener, DiscerningListener):
        return listener.watch_dir(path)
    return True


def accepts_file(listener: Listener, path: Path) -> bool:
    """Ask a listener whether a file change is relevant (default: yes)."""
    if isinstance(listener, DiscerningListener):
        return listener.watch_file(path)
    return True
