"""
Log handlers for Clew.

JSONLFormatter renders each record as one JSON object; JSONLRotatingHandler
writes those lines to a size-rotated file. Secrets are scrubbed from the
parsed values rather than the raw line, so redaction never breaks the JSON.
"""

import json
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .config import redact


def _scrub(value: Any) -> Any:
    """Redact every string inside a decoded JSON value."""
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, dict):
        return {key: _scrub(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    return value


class JSONLFormatter(logging.Formatter):
    """
    Render a record as a single JSON line.

    Messages produced by a log entry's to_json() pass through as objects.
    Anything else is wrapped with timestamp, level and logger name.
    """

    def __init__(self, redact_enabled: bool = True):
        super().__init__()
        self.redact_enabled = redact_enabled

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            data = None

        if not isinstance(data, dict):
            data = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "message": message,
                "logger": record.name,
            }
            if record.exc_info:
                data["exception"] = self.formatException(record.exc_info)

        if self.redact_enabled:
            data = _scrub(data)
        return json.dumps(data, default=str)


class JSONLRotatingHandler(RotatingFileHandler):
    """Size-rotated JSONL file. Creates its directory on first open."""

    def __init__(
        self,
        filename: str | Path,
        max_bytes: int = 10_000_000,  # 10MB
        backup_count: int = 5,
        redact_enabled: bool = True,
    ):
        filepath = Path(filename)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        super().__init__(
            str(filepath),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        self.setFormatter(JSONLFormatter(redact_enabled))


def create_jsonl_logger(
    name: str,
    filepath: Path,
    level: str = "INFO",
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    redact_enabled: bool = True,
) -> logging.Logger:
    """
    Create a non-propagating logger that writes JSONL to filepath.

    Args:
        name: Logger name
        filepath: Path to log file
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        max_bytes: Max file size before rotation
        backup_count: Number of backup files
        redact_enabled: Scrub secrets before writing
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.addHandler(
        JSONLRotatingHandler(
            filepath,
            max_bytes=max_bytes,
            backup_count=backup_count,
            redact_enabled=redact_enabled,
        )
    )
    logger.propagate = False
    return logger
