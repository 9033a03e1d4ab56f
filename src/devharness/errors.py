"""Error types raised and returned by the development harness."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# e.g. "app/controllers/app.go:12:5: undefined: foo"
_COMPILE_ERROR_RE = re.compile(r"^([^:#\n]+):(\d+):(\d+:)? (.*)$", re.MULTILINE)
# Fallback for tools that print "path:line: message"
_COMPILE_ERROR_FALLBACK_RE = re.compile(r"^(.*?):(\d+):\s(.*?)$", re.MULTILINE)

CONTEXT_LINES = 5


class HarnessError(Exception):
    """Base class for all harness errors."""


class WatchConfigurationError(HarnessError):
    """A watched root could not be stat'ed or registered."""


@dataclass
class SourceLine:
    """A single line of source shown around an error."""

    source: str
    line: int
    is_error: bool


class SourceError(HarnessError):
    """A build or source error presented to the user on the next request."""

    def __init__(
        self,
        title: str = "",
        description: str = "",
        path: str = "",
        line: int = 0,
        column: int = 0,
        source_type: str = "",
        source_lines: list[str] | None = None,
    ):
        super().__init__(description)
        self.title = title
        self.description = description
        self.path = path
        self.line = line
        self.column = column
        self.source_type = source_type
        self.source_lines = source_lines
        self.meta_error = ""
        self.link = ""

    def __str__(self) -> str:
        loc = ""
        if self.path:
            line = f":{self.line}" if self.line else ""
            loc = f"(in {self.path}{line})"
        header = loc
        if self.title:
            header = f"{self.title} {loc}: " if loc else f"{self.title}: "
        return f"{header}{self.description}"

    def __repr__(self) -> str:
        return f"SourceError(title={self.title!r}, path={self.path!r}, line={self.line})"

    def set_link(self, error_link: str) -> None:
        """Build an HTML link from a template containing {{Path}} and {{Line}}."""
        href = error_link.replace("{{Path}}", self.path).replace("{{Line}}", str(self.line))
        self.link = f"<a href={href}>{self.path}:{self.line}</a>"

    def context_source(self) -> list[SourceLine]:
        """Return the source lines surrounding the error line."""
        if self.source_lines is None:
            return []
        start = max((self.line - 1) - CONTEXT_LINES, 0)
        end = min((self.line - 1) + CONTEXT_LINES, len(self.source_lines))
        return [
            SourceLine(source=src, line=start + i + 1, is_error=start + i + 1 == self.line)
            for i, src in enumerate(self.source_lines[start:end])
        ]

    @classmethod
    def from_compiler_output(
        cls,
        output: str,
        base_path: Path | None = None,
        error_link: str = "",
        source_type: str = "code",
    ) -> "SourceError":
        """Parse compiler output into a SourceError pointing at the first failure.

        Args:
            output: Combined stdout/stderr of the failed build command
            base_path: Directory relative paths in the output are resolved against
            error_link: Optional link template, see set_link()
            source_type: Human readable kind of source that failed

        Returns:
            SourceError with path/line/column and the offending file's lines
        """
        title = "Compilation Error"
        match = _COMPILE_ERROR_RE.search(output)
        if match is not None:
            rel_path, line, column, description = match.groups()
            column = column.rstrip(":") if column else "0"
        else:
            match = _COMPILE_ERROR_FALLBACK_RE.search(output)
            if match is None:
                logger.error(f"Failed to parse build errors: {output}")
                return cls(
                    title=title,
                    description="See console for build error.",
                    source_type=source_type,
                )
            rel_path, line, description = match.groups()
            column = "0"

        error = cls(
            title=title,
            description=description,
            path=rel_path,
            line=int(line),
            column=int(column),
            source_type=source_type,
        )
        if error_link:
            error.set_link(error_link)

        abs_path = Path(rel_path)
        if base_path is not None and not abs_path.is_absolute():
            abs_path = base_path / abs_path
        try:
            error.source_lines = abs_path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError as e:
            error.meta_error = f"{abs_path}: {e}"
            logger.info(f"Unable to read source lines: {error.meta_error}")
        return error


class BuildError(HarnessError):
    """A builder failure that is not attributable to a source location."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class AppStartError(HarnessError):
    """The app binary could not be launched."""


class AppExitedError(HarnessError):
    """The app exited before announcing it was ready."""

    def __init__(self, returncode: int | None):
        super().__init__(f"app died reason: exit status {returncode}")
        self.returncode = returncode


class AppStartupTimeout(HarnessError):
    """The app did not announce readiness within the startup timeout."""


class ProcessKillError(HarnessError):
    """The app process could not be killed. Not recoverable."""
