"""Centralized logging configuration.

This module provides:
- PlainFormatter for human-readable stderr output (default)
- JSONFormatter for structured output (LOG_FORMAT=json)

Everything goes to stderr so stdout stays free for the stdio transport.
"""

import json
import logging
import os
import re
import sys
from typing import Optional

TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service: str = "onenote-mcp"):
        super().__init__()
        self.service = service

    def to_dict(self, record: logging.LogRecord) -> dict:
        # Extract tag from message if present: [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = TAG_PATTERN.match(message)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "service": self.service,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "logger": record.name,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            }
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["extra"]["exception"] = self.formatException(record.exc_info)

        return log_entry

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.to_dict(record))


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(log_format: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """Configure the root logger with a single stderr handler.

    Args:
        log_format: "plain" or "json". Defaults to LOG_FORMAT, then "plain".
        level: Level name. Defaults to LOG_LEVEL, then "INFO".

    Returns:
        Configured root logger.
    """
    log_format = (log_format or os.getenv("LOG_FORMAT", "plain")).lower()
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Get root logger and clear existing handlers
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(log_level)
    stderr_handler.setFormatter(JSONFormatter() if log_format == "json" else PlainFormatter())
    root_logger.addHandler(stderr_handler)

    # Suppress noisy HTTP client logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger
