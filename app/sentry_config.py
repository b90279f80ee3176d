"""
Sentry integration for the recommendation engine.

Reporting is optional: without ``SENTRY_DSN`` the SDK is never initialised and
the capture helpers are no-ops as far as the engine is concerned.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.threading import ThreadingIntegration

LOGGER = logging.getLogger(__name__)


def init_sentry(
    *,
    service_name: str = "recengine",
    enable_tracing: bool = False,
    traces_sample_rate: float = 0.1,
    environment: Optional[str] = None,
) -> bool:
    """
    Initialise the Sentry SDK.

    Args:
        service_name: Tag identifying the component
        enable_tracing: Whether to send performance traces
        traces_sample_rate: Trace sample rate (0.0-1.0)
        environment: Environment name (production/staging/development)

    Returns:
        Whether Sentry was initialised
    """
    dsn = os.getenv("SENTRY_DSN")

    if not dsn:
        LOGGER.warning("SENTRY_DSN not set, Sentry monitoring disabled")
        return False

    if environment is None:
        environment = os.getenv("SENTRY_ENVIRONMENT", "production")
    traces_sample_rate = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", str(traces_sample_rate)))

    integrations = [
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ThreadingIntegration(propagate_scope=True),
    ]

    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=integrations,
            traces_sample_rate=traces_sample_rate if enable_tracing else 0.0,
            environment=environment,
            release=os.getenv("SENTRY_RELEASE", "unknown"),
            before_send=before_send_filter,
        )
        sentry_sdk.set_tag("service", service_name)
        LOGGER.info(
            "Sentry initialized (service=%s, env=%s, traces_rate=%.2f)",
            service_name,
            environment,
            traces_sample_rate,
        )
        return True

    except Exception as exc:  # noqa: BLE001
        LOGGER.error("Failed to initialize Sentry: %s", exc)
        return False


def before_send_filter(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop caller mistakes; only unexpected failures are worth an event."""
    if "exc_info" in hint:
        exc_type = hint["exc_info"][0]
        if exc_type.__name__ in {"ValidationError", "NotFoundError"}:
            return None
    return event


def set_recommendation_context(
    *,
    algorithm: Optional[str] = None,
    variant: Optional[str] = None,
    model_id: Optional[str] = None,
    degrade_reason: Optional[str] = None,
) -> None:
    """
    Tag the current scope with recommendation details.

    Args:
        algorithm: Algorithm that produced the list
        variant: Experiment variant served
        model_id: Active model id, if any
        degrade_reason: Why a fallback path was taken
    """
    scope = sentry_sdk.get_current_scope()
    context = {}
    for key, value in (
        ("algorithm", algorithm),
        ("variant", variant),
        ("model_id", model_id),
        ("degrade_reason", degrade_reason),
    ):
        if value:
            scope.set_tag(key, value)
            context[key] = value
    if context:
        scope.set_context("recommendation", context)


def capture_exception_with_context(
    exception: Exception,
    *,
    level: str = "error",
    fingerprint: Optional[list] = None,
    **extra_context,
) -> None:
    """
    Capture an exception with extra context.

    Args:
        exception: The exception
        level: Severity (fatal/error/warning/info/debug)
        fingerprint: Grouping fingerprint
        **extra_context: Extra values attached to the event
    """
    with sentry_sdk.new_scope() as scope:
        scope.set_level(level)

        if fingerprint:
            scope.fingerprint = fingerprint

        for key, value in extra_context.items():
            scope.set_extra(key, value)

        sentry_sdk.capture_exception(exception)


def add_breadcrumb(
    message: str,
    category: str,
    level: str = "info",
    **data,
) -> None:
    """
    Record a breadcrumb.

    Args:
        message: Message text
        category: Category (model/experiment/tracking ...)
        level: Level
        **data: Attached data
    """
    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data,
    )


__all__ = [
    "add_breadcrumb",
    "before_send_filter",
    "capture_exception_with_context",
    "init_sentry",
    "set_recommendation_context",
]
