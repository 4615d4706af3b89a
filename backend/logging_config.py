"""Centralized logging configuration."""

import logging

from config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s  %(message)s"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "httpx",
    "httpcore",
    "urllib3",
    "keyring",
)


def setup_logging(level: str | None = None) -> None:
    """Configure logging for the application.

    Sets the root logger level from ``level`` (or settings.LOG_LEVEL) and
    suppresses noisy third-party loggers to WARNING. The thread name is part
    of every line so sync-job output can be told apart from request handling.
    """
    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
        level=getattr(logging, (level or settings.LOG_LEVEL).upper()),
        force=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
