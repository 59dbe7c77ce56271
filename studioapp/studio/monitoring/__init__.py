# studio/monitoring/__init__.py
"""
Error tracking and monitoring integration.

Provides:
- Sentry error tracking
- Performance monitoring (APM)
- Per-request user context
- Manual capture helpers for best-effort code paths
"""

from typing import Optional

import sentry_sdk
from flask import Flask, g, request
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration


def init_sentry(app: Flask) -> bool:
    """
    Initialize Sentry error tracking and performance monitoring.

    Args:
        app: Flask application instance

    Returns:
        True when Sentry was initialized
    """
    sentry_dsn = app.config.get("SENTRY_DSN")

    if not sentry_dsn:
        app.logger.info("Sentry DSN not configured - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[
            FlaskIntegration(transaction_style="url"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=app.config.get("SENTRY_LOG_LEVEL", None),
                event_level=app.config.get("SENTRY_EVENT_LEVEL", None),
            ),
        ],
        traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.1),
        profiles_sample_rate=app.config.get("SENTRY_PROFILES_SAMPLE_RATE", 0.1),
        environment=app.config.get("SENTRY_ENVIRONMENT", "production"),
        release=app.config.get("SENTRY_RELEASE", "unknown"),
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        sample_rate=app.config.get("SENTRY_SAMPLE_RATE", 1.0),
        before_send=before_send_event,
    )

    app.logger.info(
        f"Sentry initialized (environment={app.config.get('SENTRY_ENVIRONMENT', 'production')}, "
        f"traces_sample_rate={app.config.get('SENTRY_TRACES_SAMPLE_RATE', 0.1)})"
    )
    register_context_processors(app)
    return True


def before_send_event(event, hint):
    """
    Filter or modify events before sending to Sentry.

    Args:
        event: Sentry event dict
        hint: Additional context

    Returns:
        Modified event dict or None to drop the event
    """
    # Health checks
    if event.get("request", {}).get("url", "").endswith("/__health__"):
        return None

    values = event.get("exception", {}).get("values") or [{}]
    if values[0].get("type") == "NotFound":
        return None

    if "exception" in event:
        exc_type = values[0].get("type", "Unknown")
        exc_value = (values[0].get("value") or "")[:100]
        event["fingerprint"] = [exc_type, exc_value]

    return event


def register_context_processors(app: Flask):
    """Register before_request hooks to add context to Sentry events."""

    @app.before_request
    def add_sentry_context():
        user = g.get("user")
        if user is not None:
            sentry_sdk.set_user({
                "id": str(user.id),
                "role": user.role,
            })

        sentry_sdk.set_context("request_info", {
            "method": request.method,
            "endpoint": request.endpoint,
        })
        sentry_sdk.set_tag("endpoint", request.endpoint or "unknown")


# Helper functions for manual error reporting

def capture_exception(error: Exception, **extra_context) -> Optional[str]:
    """
    Manually capture an exception to Sentry.

    Args:
        error: Exception to capture
        **extra_context: Additional context to attach

    Returns:
        Sentry event ID (None when Sentry is disabled)
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in extra_context.items():
            scope.set_context(key, value)
        return sentry_sdk.capture_exception(error)


def capture_message(message: str, level: str = "info", **extra_context) -> Optional[str]:
    with sentry_sdk.new_scope() as scope:
        for key, value in extra_context.items():
            scope.set_context(key, value)
        return sentry_sdk.capture_message(message, level=level)
