"""
Structured logging for the fee router: one JSON object per event.

Every record carries timestamp (ISO 8601, UTC), level, logger, event_type and
message; routing events add transaction_id / wallet_id and amounts. Amounts
are Decimal and are rendered as strings so no precision is lost on the way to
the log aggregator.

LOG_LEVEL (default INFO) and LOG_FORMAT (json | console) are read once at
import. Only stdlib logging and structlog are imported here so any
backend_feerouter module can import this without cycles.
"""

from __future__ import annotations

import logging
import os
import sys
from decimal import Decimal
from typing import Any, TextIO

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()

SERVICE_NAME = "feerouter"

EventDict = dict[str, Any]


def _decimals_to_str(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Render Decimal amounts as plain strings (no float rounding, no exponent)."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = format(value, "f")
    return event_dict


def _event_type(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """structlog's 'event' becomes event_type; message mirrors it unless given."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    event_dict.setdefault("message", str(event_dict.get("event_type", "")))
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """
    (Re)configure structlog for the process.

    Runs once on import with the LOG_LEVEL / LOG_FORMAT environment. Loggers
    created after a later call use the new settings; existing ones keep theirs.
    """
    level_value = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    renderer: Any
    if (fmt or LOG_FORMAT) == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    else:
        renderer = structlog.processors.JSONRenderer(default=str)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _decimals_to_str,
            _event_type,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=False,
    )


if not structlog.is_configured():
    configure_logging()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Module logger; first positional arg is the snake_case event type.

        logger = get_logger(__name__)
        logger.info("fee_routed", transaction_id=tx.id, amount=tx.amount)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_transaction(
    transaction_id: str, name: str = "backend_feerouter", **context: Any
) -> structlog.BoundLogger:
    """Logger `name` with transaction_id (and any extra context) bound to every call."""
    return get_logger(name).bind(transaction_id=transaction_id, **context)
