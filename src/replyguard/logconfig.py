"""Logging setup shared by the CLI, the scheduler and the web app."""

from __future__ import annotations

import logging

from replyguard.config import LoggingConfig

# Client libraries that log every HTTP request at INFO
_NOISY_LOGGERS = (
    "googleapiclient.discovery_cache",
    "googleapiclient.discovery",
    "httpx",
    "httpcore",
    "imapclient",
    "apscheduler.executors.default",
)


def configure_logging(config: LoggingConfig | None = None, level: str | None = None) -> None:
    """Configure the root logger from the logging config section."""
    config = config or LoggingConfig()
    resolved = (level or config.level or "INFO").upper()
    logging.basicConfig(level=resolved, format=config.format, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
