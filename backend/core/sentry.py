"""
Sentry Error Tracking Configuration
Sentry SDK initialization for the matching worker, Celery and the health API.
"""

import logging
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from backend.core.config import settings

logger = logging.getLogger(__name__)

# Keys that may carry member identity or precise location
SCRUBBED_KEYS = ("push_token", "to", "latitude", "longitude", "lat", "lng")


def _scrub(values: dict[str, Any]) -> None:
    for key in SCRUBBED_KEYS:
        if key in values:
            values[key] = "[REDACTED]"


def before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """
    Strip push tokens and coordinates from events before they leave the process.
    """
    extra = event.get("extra")
    if isinstance(extra, dict):
        _scrub(extra)

    for crumb in event.get("breadcrumbs", {}).get("values", []):
        data = crumb.get("data")
        if isinstance(data, dict):
            _scrub(data)

    return event


def init_sentry(service: str) -> bool:
    """
    Initialize Sentry SDK.

    Args:
        service: Tag identifying the process ("worker", "celery", "api").

    Returns:
        bool: True if Sentry was initialized, False otherwise.
    """
    if not settings.sentry_dsn:
        logger.info("Sentry DSN not configured, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.sentry_environment or settings.environment,
            release=f"mndigitalaid-matching@{settings.app_version}",
            traces_sample_rate=settings.sentry_traces_sample_rate,
            integrations=[
                CeleryIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
                SqlalchemyIntegration(),
            ],
            before_send=before_send,
            send_default_pii=False,
            attach_stacktrace=True,
            max_breadcrumbs=50,
        )
        sentry_sdk.set_tag("service", service)

        logger.info(
            f"Sentry initialized (service={service}, "
            f"env={settings.sentry_environment or settings.environment})"
        )
        return True

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def capture_exception(
    error: Exception,
    need_id: str | None = None,
    extra: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture an exception with matching-run context.

    Args:
        error: The exception to capture
        need_id: Need whose run raised the error
        extra: Optional extra data to attach

    Returns:
        Event ID if captured, None otherwise
    """
    with sentry_sdk.new_scope() as scope:
        if need_id:
            scope.set_tag("need_id", need_id)

        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)

        return sentry_sdk.capture_exception(error)
