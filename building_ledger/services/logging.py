"""Logging setup for processes that drive the ledger.

Service modules only call ``logging.getLogger(__name__)``; the entry point
calls :func:`setup_logging` once. Level comes from LOG_LEVEL (env or .env),
INFO when unset or unrecognized.
"""

import logging
import os
import sys
from pathlib import Path

from building_ledger.services.config import settings

LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

LOG_FORMAT = "[%(asctime)s] %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level(name: str | None = None) -> int:
    """Resolve a level name to a logging constant.

    Without an explicit name, the process environment wins over the value
    loaded from .env at import time.
    """
    if name is None:
        name = os.getenv("LOG_LEVEL", settings.log_level)
    return LOG_LEVEL_MAP.get(name.strip().upper(), logging.INFO)


def setup_logging(log_file: str | None = settings.log_file, level: str | None = None) -> None:
    """Send every logger to stdout and, when log_file is set, to that file.

    Previously installed root handlers are replaced, so calling
    this twice does not duplicate output. SQLAlchemy engine chatter stays at
    WARNING unless DATABASE_ECHO is enabled.
    """
    log_level = get_log_level(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
