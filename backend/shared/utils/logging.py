"""
Structured logging for the live-sync services.
structlog over stdlib logging: console output in dev, JSON lines elsewhere.
"""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from shared.config import get_settings

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncio", "sqlalchemy.engine")


def setup_logging(service_name: str, extra_context: dict[str, Any] | None = None) -> None:
    """
    Configure structured logging for a service.

    Args:
        service_name: The service identifier (api, scheduler).
        extra_context: Additional static context fields bound to every log entry.
    """
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    render_chain: list[structlog.types.Processor]
    if settings.environment.value == "dev":
        render_chain = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    else:
        render_chain = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *render_chain,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    bound: dict[str, Any] = {
        "service": service_name,
        "instance_id": settings.instance_id,
        "competition": settings.active_competition,
    }
    if extra_context:
        bound.update(extra_context)
    structlog.contextvars.bind_contextvars(**bound)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a named structured logger."""
    return structlog.get_logger(name)
