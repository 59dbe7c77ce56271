# studio/billing/routes.py
from __future__ import annotations

from flask import Blueprint, jsonify, request

from studio.auth.session import login_required, require_admin, session_user_id
from studio.errors import BillingValidationError
from studio.extensions import limiter
from studio.services import billing

billing_bp = Blueprint("billing_bp", __name__, url_prefix="/api")


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


# ---------------------- Subscription ----------------------

@billing_bp.route("/subscription/plans", methods=["GET"])
def plans():
    return jsonify({"plans": [p.to_dict() for p in billing.get_subscription_plans()]})


@billing_bp.route("/subscription/checkout", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def checkout():
    data = _json_body()
    result = billing.create_checkout_session(
        session_user_id(),
        data.get("planId"),
        data.get("interval") or "monthly",
    )
    return jsonify(result)


@billing_bp.route("/subscription/cancel", methods=["POST"])
@login_required
def cancel():
    data = _json_body()
    result = billing.cancel_user_subscription(session_user_id(), bool(data.get("immediately", False)))
    return jsonify(result)


@billing_bp.route("/subscription/change", methods=["POST"])
@login_required
def change():
    data = _json_body()
    if not data.get("planId") or not data.get("interval"):
        raise BillingValidationError("Missing planId or interval")
    result = billing.change_subscription_plan(session_user_id(), data["planId"], data["interval"])
    return jsonify(result)


@billing_bp.route("/subscription/sync-credits", methods=["POST"])
@login_required
def sync_credits():
    data = _json_body()
    result = billing.update_user_credits_based_on_plan(session_user_id(), data.get("mode") or "overwrite")
    return jsonify(result)


@billing_bp.route("/subscription/renew", methods=["POST"])
@require_admin
def renew():
    data = _json_body()
    if not data.get("stripeSubscriptionId"):
        raise BillingValidationError("Stripe subscription ID is required")
    return jsonify(billing.process_subscription_renewal(data["stripeSubscriptionId"]))


# ---------------------- User ----------------------

@billing_bp.route("/user/credits", methods=["GET"])
@login_required
def user_credits():
    return jsonify({"credits": billing.get_user_credits(session_user_id())})


@billing_bp.route("/user/subscription", methods=["GET"])
@login_required
def user_subscription():
    return jsonify(billing.get_current_tier(session_user_id()))


# ---------------------- Billing ----------------------

@billing_bp.route("/billing/history", methods=["GET"])
@login_required
def history():
    limit = request.args.get("limit", default=20, type=int)
    limit = max(1, min(limit or 20, 100))
    return jsonify(billing.get_user_billing_history(session_user_id(), limit))


@billing_bp.route("/billing/payment-issues", methods=["GET"])
@login_required
def payment_issues():
    return jsonify(billing.get_payment_issues(session_user_id()))


@billing_bp.route("/billing/portal", methods=["POST"])
@login_required
def portal():
    return jsonify(billing.create_billing_portal_session(session_user_id()))
