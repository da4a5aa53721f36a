"""Process-wide logging setup for the API server and the CLI scripts."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s  %(message)s"

# Client libraries that log every request at INFO/DEBUG
NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "aiosqlite",
    "httpx",
    "httpcore",
    "urllib3",
    "plaid",
)


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger.

    Args:
        level: Overrides ``settings.LOG_LEVEL`` (scripts pass ``DEBUG``
            for ``--verbose``).

    Output always goes to stderr. When ``settings.LOG_FILE`` is set it is
    also written to a size-rotated file, so cron-driven refreshes leave a
    trail.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.LOG_FILE:
        path = Path(settings.LOG_FILE)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3, encoding="utf-8"))

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        level=getattr(logging, (level or settings.LOG_LEVEL).upper()),
        handlers=handlers,
        force=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
