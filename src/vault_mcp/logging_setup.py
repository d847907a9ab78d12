"""Logging configuration for the vaultmcp server."""

import logging
from logging.handlers import TimedRotatingFileHandler

from vault_mcp.config import Config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FILENAME = "vaultmcp.log"


def setup_logging(config: Config) -> None:
    """Configure root logging: console always, plus a daily file when VAULT_LOG_DIR is set."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.log_dir is not None:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            config.log_dir / LOG_FILENAME,
            when="midnight",
            backupCount=14,
            encoding="utf-8",
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )

    # watchdog is chatty at DEBUG
    logging.getLogger("watchdog").setLevel(logging.WARNING)
