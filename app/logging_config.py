"""Structured logging configuration for the recommendation engine."""
import logging
import sys
from typing import Optional

import structlog


def setup_structured_logging(
    level: str = "INFO",
    json_logs: bool = True,
    service_name: str = "recengine",
    environment: str = "production",
) -> None:
    """
    Configure structured logging with structlog.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to output JSON formatted logs
        service_name: Name of the service for log context
        environment: Deployment environment bound to every event
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment,
    )

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(request_id: str, user_id: Optional[str] = None) -> None:
    """Bind the request (and user) id to every log event of the current context."""
    context = {"request_id": request_id}
    if user_id is not None:
        context["user_id"] = user_id
    structlog.contextvars.bind_contextvars(**context)


def clear_request_context() -> None:
    """Remove the request binding added by bind_request_context."""
    structlog.contextvars.unbind_contextvars("request_id", "user_id")


__all__ = [
    "bind_request_context",
    "clear_request_context",
    "setup_structured_logging",
]
