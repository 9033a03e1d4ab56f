"""Configuration management for the development harness."""

import logging
import shlex
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_READY_SENTINEL = "Revel engine is listening on"
HISTORIC_READY_SENTINEL = "Listening on"


class Settings(BaseSettings):
    """Harness settings loaded from HARNESS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HARNESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application settings
    app_path: Path = Field(
        default_factory=Path.cwd,
        description="Root directory of the application being developed",
    )
    import_path: str | None = Field(
        default=None,
        description="Import path passed to the app binary (defaults to directory name)",
    )
    code_paths: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Directories to watch, relative to app_path (comma-separated)",
    )
    run_mode: str = Field(
        default="dev",
        description="Run mode passed to the app binary",
    )
    historic_mode: bool = Field(
        default=False,
        description="Also accept the legacy startup announcement as ready sentinel",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    # Build settings
    build_command: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Command that compiles the app (shell-style string)",
    )
    binary_path: Path = Field(
        default=Path("tmp/app"),
        description="Path of the binary produced by build_command, relative to app_path",
    )
    error_link: str = Field(
        default="",
        description="Link template for build errors, may contain {{Path}} and {{Line}}",
    )

    # Network settings
    http_addr: str = Field(
        default="",
        description="Address the proxy listens on (empty for all interfaces)",
    )
    http_port: int = Field(
        default=9000,
        description="Port the proxy (or the app, without proxy) listens on",
    )
    app_port: int = Field(
        default=0,
        description="Internal port of the proxied app (0 picks a free port)",
    )
    use_proxy: bool = Field(
        default=True,
        description="Front the app with the rebuilding proxy",
    )

    # Watcher settings
    watch: bool = Field(
        default=True,
        description="Rebuild on source changes; when false, build once and run the app inline",
    )
    watch_mode: Literal["normal", "eager"] = Field(
        default="normal",
        description="'eager' rebuilds as soon as files change, 'normal' on the next request",
    )
    serial_refresh: bool = Field(
        default=False,
        description="Serialize refreshes under one lock instead of debouncing them",
    )
    rebuild_delay_seconds: float = Field(
        default=1.0,
        description="Debounce window for rebuild requests in seconds",
    )
    poll_interval_seconds: float = Field(
        default=1.0,
        description="Interval between change checks when running without the proxy",
    )
    watch_extensions: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="File suffixes that trigger a rebuild (comma-separated, empty for all)",
    )
    ignored_dirs: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["tmp", "__pycache__", "node_modules"],
        description="Directory names never descended into (comma-separated)",
    )

    # Process settings
    startup_timeout_seconds: float = Field(
        default=60.0,
        description="Seconds to wait for the app to announce it is listening",
    )
    ready_sentinels: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [DEFAULT_READY_SENTINEL],
        description="Substrings of the app's stdout that mean it is ready (comma-separated)",
    )

    @field_validator(
        "code_paths", "watch_extensions", "ignored_dirs", "ready_sentinels", mode="before"
    )
    @classmethod
    def parse_comma_separated(cls, v: str | list[str]) -> list[str]:
        """Parse comma-separated string into list."""
        if isinstance(v, str):
            if not v.strip():
                return []
            return [d.strip() for d in v.split(",") if d.strip()]
        return v

    @field_validator("build_command", mode="before")
    @classmethod
    def parse_build_command(cls, v: str | list[str]) -> list[str]:
        """Split a shell-style command string into arguments."""
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("app_path", mode="before")
    @classmethod
    def validate_app_path(cls, v: str | Path) -> Path:
        """Convert string to Path and validate it exists."""
        path = Path(v) if isinstance(v, str) else v
        if not path.exists():
            raise ValueError(f"Application path does not exist: {path}")
        if not path.is_dir():
            raise ValueError(f"Application path is not a directory: {path}")
        return path.resolve()

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @property
    def effective_import_path(self) -> str:
        """Get the import path, defaulting to the app directory name."""
        return self.import_path or self.app_path.name

    @property
    def effective_code_paths(self) -> list[Path]:
        """Get absolute paths to watch, defaulting to the app directory."""
        if not self.code_paths:
            return [self.app_path]
        return [self.app_path / p for p in self.code_paths]

    @property
    def effective_binary_path(self) -> Path:
        """Get the absolute path of the built binary."""
        return self.app_path / self.binary_path

    @property
    def effective_sentinels(self) -> list[str]:
        """Get the readiness sentinels including the historic one if enabled."""
        sentinels = list(self.ready_sentinels)
        if self.historic_mode and HISTORIC_READY_SENTINEL not in sentinels:
            sentinels.append(HISTORIC_READY_SENTINEL)
        return sentinels

    @property
    def eager_refresh(self) -> bool:
        """Whether rebuilds should start as soon as files change."""
        return self.watch_mode == "eager"


def setup_logging(level: str) -> None:
    """Configure logging for the application."""
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
