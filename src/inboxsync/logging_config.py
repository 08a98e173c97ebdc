"""
Logging setup for inboxsync.

Configures the ``inboxsync`` logger hierarchy from settings: console output,
optional rotating log files, and a JSON line format for log shippers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from inboxsync.config import Settings, settings as default_settings

STANDARD_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JsonFormatter()
    return logging.Formatter(STANDARD_FORMAT)


def setup_logging(
    context: str = "client",
    config: Optional[Settings] = None,
) -> logging.Logger:
    """
    Configure logging for the given context.

    Args:
        context: Name used for the log file (``<context>.log``)
        config: Settings to read from (defaults to the global settings)

    Returns:
        The configured ``inboxsync`` logger

    Raises:
        PermissionError: If file logging is enabled but the log directory
            cannot be created
    """
    config = config or default_settings
    logger = logging.getLogger("inboxsync")
    logger.setLevel(config.log_level.upper())

    # Re-running setup must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = _build_formatter(config.log_format)

    if config.log_console_enabled:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        logger.addHandler(console)

    if config.log_file_enabled:
        log_dir = config.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / f"{context}.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    logger.propagate = False
    return logger
