"""Structured logging setup.

Production renders one JSON object per line; every other environment gets the
colored console renderer. Request-scoped values (``request_id``) are carried
through ``structlog.contextvars`` so they show up on every event logged while
the request is being handled.
"""

import logging
import uuid

import structlog
from structlog.typing import Processor

import config


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def configure_logging(environment: str = config.ENVIRONMENT, level: str = config.LOG_LEVEL) -> None:
    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if environment == "production":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=environment == "development")

    structlog.configure(
        processors=shared + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(_level(level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def bind_request(request_id: str, **values) -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **values)
