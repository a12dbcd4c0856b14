"""
Structured JSON logging configuration.

Call configure_logging() once from an entry point (scripts, executor host).
Library modules only do ``logger = logging.getLogger(__name__)`` and pass
workflow context through ``extra=``.
"""

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import List, Optional

ROOT_LOGGERS = ("core", "config", "scripts")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Rotate at 10MB, keep 5 files
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


class JSONFormatter(logging.Formatter):
    """One JSON object per record, plus any workflow context passed via extra=."""

    CONTEXT_FIELDS = (
        "node_id",
        "target",
        "action",
        "provision_state",
        "job_id",
        "attempt",
        "duration_s",
    )

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(
            (name, getattr(record, name))
            for name in self.CONTEXT_FIELDS
            if hasattr(record, name)
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _console_handler(log_format: str) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG)
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)
    handler.setFormatter(formatter)
    return handler


def _file_handler(path: str) -> logging.Handler:
    # Files are always JSON so they can be shipped as-is
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(JSONFormatter())
    return handler


def configure_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """Configure logging for the package loggers.

    Args:
        log_level: Level name (default: settings LOG_LEVEL)
        log_format: "json" or "text" (default: settings LOG_FORMAT)
        log_file: Optional rotating log file path (default: settings LOG_FILE)

    Returns:
        The "core" logger.
    """
    if log_level is None or log_format is None or log_file is None:
        from config.settings import get_settings
        settings = get_settings()
        log_level = log_level or settings.log_level
        log_format = log_format or settings.log_format
        log_file = settings.log_file if log_file is None else log_file

    handlers: List[logging.Handler] = [_console_handler(log_format)]
    if log_file:
        handlers.append(_file_handler(log_file))

    level = getattr(logging, log_level.upper(), logging.INFO)
    for name in ROOT_LOGGERS:
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level)
        package_logger.handlers = list(handlers)
        package_logger.propagate = False

    return logging.getLogger("core")
