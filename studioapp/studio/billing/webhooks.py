# studio/billing/webhooks.py
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from studio.errors import WebhookMetadataError, WebhookSignatureError
from studio.extensions import limiter
from studio.monitoring import capture_exception
from studio.services.stripe_webhooks import construct_webhook_event, process_webhook_event

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


@webhooks_bp.route("/stripe", methods=["POST"])
@limiter.exempt
def stripe_webhook():
    """
    Stripe webhook endpoint.

    400: bad signature/payload or missing metadata (nothing written)
    500: processing failed and was rolled back (Stripe retries)
    200: handled, skipped, ignored or duplicate
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    try:
        event = construct_webhook_event(payload, sig_header)
    except WebhookSignatureError as e:
        current_app.logger.warning(f"Rejected Stripe webhook: {e.message}")
        return jsonify({"error": f"Webhook Error: {e.message}"}), 400

    try:
        result = process_webhook_event(event)
    except WebhookMetadataError as e:
        current_app.logger.warning(f"Stripe event {event['id']} ({event['type']}) rejected: {e.message}")
        return jsonify({"error": e.message}), 400
    except Exception as e:
        capture_exception(e, webhook={"event_id": event["id"], "event_type": event["type"]})
        return jsonify({"error": "Webhook handler failed"}), 500

    return jsonify({"received": True, "outcome": result.outcome, "eventType": result.event_type}), 200
