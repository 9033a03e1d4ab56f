"""Entry point: run the harness configured from the environment."""

import logging

from .builder import Builder, CommandBuilder
from .config import Settings, setup_logging
from .harness import App, Harness, app_run_mode

logger = logging.getLogger(__name__)


def run_once(config: Settings, builder: Builder) -> None:
    """Build the app once and run it in the foreground, without watching."""
    binary = builder.build()
    app = App(
        binary,
        config.http_port,
        config.effective_import_path,
        config.effective_sentinels,
    )
    app.command(app_run_mode(config)).run()


def main():
    """Entry point for the devharness command."""
    try:
        config = Settings()
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

    setup_logging(config.log_level)
    logger.info(f"Running {config.effective_import_path} in {config.run_mode} mode")
    logger.info(f"Application path: {config.app_path}")

    builder = CommandBuilder(config)
    if not config.watch:
        try:
            run_once(config, builder)
        except Exception as e:
            logger.error(f"Failed to run application: {e}")
            raise
        return

    harness = Harness(config, builder)
    harness.run()


if __name__ == "__main__":
    main()
