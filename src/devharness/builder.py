"""Building the app: source metadata, code generation and compilation."""

import logging
import subprocess
from pathlib import Path
from typing import Callable, Protocol

from pydantic import BaseModel, Field

from .config import Settings
from .errors import BuildError, SourceError

logger = logging.getLogger(__name__)


class HandlerSpec(BaseModel):
    """A request handler type found in the app's sources."""

    name: str = Field(..., description="Type name of the handler")
    import_path: str = Field(..., description="Import path of the package defining it")
    actions: list[str] = Field(default_factory=list, description="Action method names")


class SourceInfo(BaseModel):
    """Metadata about the app's sources needed to generate glue code."""

    handlers: list[HandlerSpec] = Field(default_factory=list)
    init_import_paths: list[str] = Field(default_factory=list)


class SourceInfoProvider(Protocol):
    """Reflects over the app's code roots."""

    def process_source(self, roots: list[Path]) -> SourceInfo:
        """Return handler metadata, or raise SourceError for unparseable code."""
        ...


class Builder(Protocol):
    """Produces the app binary."""

    def build(self) -> Path:
        """Build the app.

        Returns:
            Path of the built binary

        Raises:
            SourceError: For compile or code generation errors with a location
            BuildError: For any other build failure
        """
        ...


class CommandBuilder:
    """Build the app by running a configured build command."""

    def __init__(
        self,
        settings: Settings,
        source_info_provider: SourceInfoProvider | None = None,
        generate: Callable[[SourceInfo], None] | None = None,
    ):
        """Initialize the builder.

        Args:
            settings: Harness settings (build command, binary path, app path)
            source_info_provider: Optional reflection step run before compiling
            generate: Optional code generation step fed with the source info
        """
        self._settings = settings
        self._source_info_provider = source_info_provider
        self._generate = generate

    def build(self) -> Path:
        settings = self._settings
        if self._source_info_provider is not None:
            source_info = self._source_info_provider.process_source(settings.effective_code_paths)
            logger.debug(f"Found {len(source_info.handlers)} request handlers")
            if self._generate is not None:
                self._generate(source_info)

        if not settings.build_command:
            raise BuildError("No build command configured")

        binary = settings.effective_binary_path
        binary.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Building: {' '.join(settings.build_command)}")
        try:
            completed = subprocess.run(
                settings.build_command,
                cwd=settings.app_path,
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise BuildError(
                "Failed to run build command", command=settings.build_command[0], error=e
            ) from e

        if completed.returncode != 0:
            output = completed.stderr + completed.stdout
            logger.error(f"Build errors:\n{output}")
            raise SourceError.from_compiler_output(
                output,
                base_path=settings.app_path,
                error_link=settings.error_link,
            )

        if not binary.exists():
            raise BuildError("Build did not produce the app binary", path=binary)
        logger.info(f"Build succeeded: {binary}")
        return binary
