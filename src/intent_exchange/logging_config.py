"""Structured logging configuration using structlog.

Events are dotted names (``escrow.funded``, ``match.accepted``,
``sweep.completed``) with entity ids as key/value pairs, so one escrow can be
followed through matching, funding and settlement. Production renders one
JSON object per line; development renders colored console output.

UUIDs, Decimals and enum members passed as values are rendered as plain
strings, so amounts keep their exact digits in JSON.

Usage:
    from intent_exchange.logging_config import setup_logging, get_logger
    setup_logging(log_level="INFO", json_logs=True)
    logger = get_logger(__name__)
    logger.info("escrow.funded", escrow_id=escrow.id, amount=escrow.amount)
"""

from __future__ import annotations

import enum
import logging
import sys
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.types import EventDict, Processor

SERVICE_NAME = "intent-exchange"

_NOISY_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "aiosqlite",
    "asyncio",
    "httpx",
    "httpcore",
)


def _plain(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, uuid.UUID | Decimal):
        return str(value)
    return value


def _render_domain_values(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    """Turn UUID / Decimal / enum values into strings before rendering."""
    for key, value in event_dict.items():
        event_dict[key] = _plain(value)
    return event_dict


def _service_tagger(service: str) -> Processor:
    def add_service(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return add_service


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    service: str = SERVICE_NAME,
) -> None:
    """Route stdlib and structlog output through one stdout handler.

    Args:
        log_level: Standard level name (DEBUG, INFO, WARNING, ...).
        json_logs: JSON lines when True, colored console otherwise.
        service: Value of the ``service`` key added to every event.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _service_tagger(service),
        _render_domain_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Processor
    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Bound logger for ``name`` (usually ``__name__``)."""
    return structlog.get_logger(name)
