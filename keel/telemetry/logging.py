"""Log formatting and setup for the Keel runtime.

Key Components:
    - KeelLogFormatter: Adds component and token columns to every record
    - KeelLogAdapter: Binds a component name and passes token counts through
    - setup_logging: Installs console and optional rotating file handlers

Format:
    [TIMESTAMP] [LEVEL] [COMPONENT] [TOKENS tokens] Message

Example:
    [2026-01-11 10:15:32] [INFO] [AGENT] [1840 tokens] [AgentLoop] Iteration 2 complete
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Union


# =============================================================================
# Constants
# =============================================================================

# Max log file size (10MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup files to keep
BACKUP_COUNT = 5

ROOT_LOGGER_NAME = "keel"


# =============================================================================
# Formatter and Adapter
# =============================================================================


class KeelLogFormatter(logging.Formatter):
    """Log formatter with component and token count columns.

    Records without a ``component`` use the last segment of the logger name,
    upper-cased. Records without ``tokens`` show ``-``.
    """

    STANDARD_FORMAT = "[%(asctime)s] [%(levelname)s] [%(component)s] [%(tokens)s tokens] %(message)s"

    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self.STANDARD_FORMAT, datefmt=self.DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "component"):
            record.component = record.name.split(".")[-1].upper()
        if not hasattr(record, "tokens"):
            record.tokens = "-"
        return super().format(record)


class KeelLogAdapter(logging.LoggerAdapter):
    """Logger adapter that adds component context.

    Example:
        >>> log = KeelLogAdapter(logging.getLogger(__name__), {"component": "AGENT"})
        >>> log.info("Model call complete", extra={"tokens": 1840})
    """

    def process(
        self,
        msg: str,
        kwargs: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra", {}))
        kwargs["extra"] = extra
        return msg, kwargs


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
) -> logging.Logger:
    """Configure the ``keel`` logger hierarchy.

    Replaces existing handlers on the ``keel`` logger, so calling this more
    than once is safe.

    Args:
        level: Logging level name or number.
        log_file: Optional path for a rotating log file.

    Returns:
        The configured ``keel`` logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = KeelLogFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_path,
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


__all__ = [
    "KeelLogFormatter",
    "KeelLogAdapter",
    "setup_logging",
    "MAX_LOG_SIZE",
    "BACKUP_COUNT",
]
