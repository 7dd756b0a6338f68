"""
Logging setup for taskloop processes (CLI, API server, embedding hosts).

Handlers are attached once to the ``taskloop`` logger; module loggers such as
``taskloop.loop`` or ``taskloop.scheduler.scheduler`` inherit them.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "taskloop"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def _resolve_log_path(log_file: Optional[str]) -> Optional[Path]:
    """``None`` picks ``data/LOGS/taskloop.log``; ``"none"`` disables the file."""
    if log_file is not None and log_file.lower() == "none":
        return None
    if log_file is None:
        from taskloop.config.loader import _find_project_root
        path = _find_project_root() / "data" / "LOGS" / "taskloop.log"
    else:
        path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Send taskloop logs to stderr and, unless disabled, a rotating file.

    Calling it again is a no-op until ``reset_logging()``.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: File path, ``None`` for the default path, or ``"none"``
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if package_logger.handlers:
        return

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    package_logger.setLevel(numeric_level)
    package_logger.propagate = False

    handlers: list = [logging.StreamHandler()]
    path = _resolve_log_path(log_file)
    if path is not None:
        handlers.append(logging.handlers.RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8",
        ))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)


def reset_logging() -> None:
    """Detach and close taskloop handlers; used by tests and re-configuration."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
