# studio/errors.py
"""
Billing error taxonomy.

Every error carries the HTTP status the JSON layer answers with, so routes
can simply let them propagate.
"""
from __future__ import annotations

from flask import jsonify


class BillingError(Exception):
    """Generic billing failure (provider or database trouble)."""

    status_code = 500
    default_message = "Billing operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message}


class AuthenticationError(BillingError):
    status_code = 401
    default_message = "User not authenticated"


class AuthorizationError(BillingError):
    status_code = 403
    default_message = "Forbidden"


class BillingValidationError(BillingError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(BillingError):
    status_code = 404
    default_message = "Not found"


class WebhookSignatureError(BillingError):
    """Webhook body could not be authenticated or parsed."""

    status_code = 400
    default_message = "Invalid webhook signature"


class WebhookMetadataError(BillingError):
    """Webhook event lacks metadata it cannot be processed without."""

    status_code = 400
    default_message = "User ID is required"


def register_error_handlers(app) -> None:
    @app.errorhandler(BillingError)
    def _billing_error(err: BillingError):
        if err.status_code >= 500:
            app.logger.error(f"Billing error: {err.message}")
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(404)
    def _not_found(_err):
        return jsonify({"ok": False, "error": "not_found"}), 404

    @app.errorhandler(405)
    def _method_not_allowed(_err):
        return jsonify({"ok": False, "error": "method_not_allowed"}), 405

    @app.errorhandler(429)
    def _rate_limited(_err):
        return jsonify({"ok": False, "error": "rate_limited"}), 429
