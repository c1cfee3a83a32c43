"""Structured logging for the context window planner.

Log lines are rendered as ``key=value`` pairs so rotations, branch resets
and cache statistics can be grepped per conversation.
"""

import logging
import sys
from typing import Any

# Fields promoted from ``extra`` to the front of the line when present
_CONTEXT_FIELDS = ("conversation_id", "participant_id", "strategy")


class StructuredFormatter(logging.Formatter):
    """Key=value structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured output."""
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        # Planner-specific numbers (tokens, dropped, markers, ...)
        if hasattr(record, "extra_data"):
            log_data.update(record.extra_data)

        return " ".join(f"{k}={v}" for k, v in log_data.items())


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger writing structured lines to stdout
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)

        try:
            from window_planner.core.config import get_settings

            env = get_settings().WINDOW_PLANNER_ENV
            logger.setLevel(logging.DEBUG if env == "dev" else logging.INFO)
        except Exception:
            # Settings unavailable (e.g. malformed .env): keep INFO
            logger.setLevel(logging.INFO)

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with conversation context and planner fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: conversation_id / participant_id / strategy plus any
            numeric fields (tokens, dropped, markers, ...)
    """
    extra: dict[str, Any] = {
        field: kwargs.pop(field) for field in _CONTEXT_FIELDS if field in kwargs
    }
    extra["extra_data"] = kwargs
    logger.log(level, msg, extra=extra)
