"""Structured JSON Logger for the card enrichment pipeline.

Provides JSON-formatted logging for observability and debugging.
Each log entry includes timestamp, level, message, and optional context fields
like card_id and stage for tracing the enrichment of individual cards.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Attributes every LogRecord carries; anything else came in via `extra`
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON objects.

    Output format:
        {
            "ts": "2026-01-23T10:30:00.123456+00:00",
            "level": "INFO",
            "msg": "Stage completed",
            "card_id": "c_123",
            "stage": "metadata",
            ...extra fields...
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="microseconds"),
            "level": record.levelname,
            "msg": record.getMessage(),
        }

        if record.name and record.name != "root":
            log_entry["logger"] = record.name

        # Fields set via logger.info("msg", extra={"key": "value"})
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class CardLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that automatically includes card_id (and stage) in all messages.

    Usage:
        logger = get_logger("pipeline")
        card_logger = CardLoggerAdapter(logger, card_id="c_1", stage="metadata")
        card_logger.info("Stage started")  # Includes card_id and stage
    """

    def __init__(self, logger: logging.Logger, card_id: str, stage: str | None = None):
        """Initialize the adapter.

        Args:
            logger: The underlying logger to adapt.
            card_id: The card ID to include in all log messages.
            stage: Optional stage name to include as well.
        """
        context: dict[str, Any] = {"card_id": card_id}
        if stage is not None:
            context["stage"] = stage
        super().__init__(logger, context)

    def process(
        self, msg: str, kwargs: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(level: str = "INFO", stream: Any = None) -> None:
    """Configure the root logger with JSON formatting.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        stream: Output stream (defaults to sys.stderr).
    """
    if stream is None:
        stream = sys.stderr

    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper()))


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__). If None, returns root logger.

    Returns:
        A configured Logger instance.
    """
    return logging.getLogger(name)


def get_card_logger(
    name: str, card_id: str, stage: str | None = None
) -> CardLoggerAdapter:
    """Get a logger adapter that stamps card_id on every record.

    Stage actions run detached from any caller, so this id is the only
    way to trace one card through the logs.

    Args:
        name: Logger name (typically __name__).
        card_id: The card being enriched.
        stage: Optional stage name.

    Returns:
        A CardLoggerAdapter.

    Example:
        logger = get_card_logger(__name__, card.id, "renderables")
        logger.info("Thumbnail stored")
        # Output: {"ts": "...", "level": "INFO", "msg": "Thumbnail stored", "card_id": "c_1", "stage": "renderables"}
    """
    return CardLoggerAdapter(get_logger(name), card_id, stage)


def reset_logging() -> None:
    """Reset logging configuration.

    Useful for testing to ensure clean state between tests.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
