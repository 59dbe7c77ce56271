# studio/admin/routes.py
from __future__ import annotations

from datetime import datetime

import stripe
from flask import Blueprint, current_app, jsonify, request

from studio.auth.session import require_admin
from studio.models_billing import StripeEvent
from studio.services import plans as plan_service
from studio.services import users as user_service
from studio.services.billing import get_subscription_metrics
from studio.services.stripe_service import get_stripe_client, stripe_value

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")
diagnostics_bp = Blueprint("diagnostics_bp", __name__, url_prefix="/api/diagnostics")

# Reported by presence/length only, never by value
DIAGNOSTIC_KEYS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_PUBLISHABLE_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_LITE_PRICE_ID",
    "STRIPE_LITE_YEARLY_PRICE_ID",
    "STRIPE_PRO_PRICE_ID",
    "STRIPE_PRO_YEARLY_PRICE_ID",
    "APP_URL",
    "SENTRY_DSN",
)


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


# ---------------------- Dashboard ----------------------

@admin_bp.route("/metrics", methods=["GET"])
@require_admin
def metrics():
    return jsonify(get_subscription_metrics())


@admin_bp.route("/dashboard-stats", methods=["GET"])
@require_admin
def dashboard_stats():
    return jsonify(plan_service.get_dashboard_stats())


# ---------------------- Subscriptions ----------------------

@admin_bp.route("/subscriptions", methods=["GET"])
@require_admin
def subscriptions():
    return jsonify({"subscriptions": plan_service.list_subscriptions()})


@admin_bp.route("/subscriptions/<int:subscription_id>/cancel", methods=["POST"])
@require_admin
def cancel_subscription(subscription_id: int):
    return jsonify(plan_service.admin_cancel_subscription(subscription_id))


@admin_bp.route("/subscriptions/<int:subscription_id>/reactivate", methods=["POST"])
@require_admin
def reactivate_subscription(subscription_id: int):
    return jsonify(plan_service.admin_reactivate_subscription(subscription_id))


# ---------------------- Users ----------------------

@admin_bp.route("/users", methods=["GET"])
@require_admin
def list_users():
    return jsonify(user_service.list_users())


@admin_bp.route("/users/<int:user_id>", methods=["PATCH"])
@require_admin
def update_user(user_id: int):
    return jsonify(user_service.update_user(user_id, _json_body()))


# ---------------------- Plans ----------------------

@admin_bp.route("/plans", methods=["GET"])
@require_admin
def list_plans():
    return jsonify({"plans": plan_service.list_plans_admin()})


@admin_bp.route("/plans", methods=["POST"])
@require_admin
def create_plan():
    data = _json_body()
    plan = plan_service.create_plan(
        name=(data.get("name") or "").strip(),
        price=data.get("price"),
        interval=data.get("interval") or "",
        description=data.get("description"),
        features=data.get("features"),
        stripe_price_id=data.get("stripePriceId"),
        credits=data.get("credits"),
    )
    return jsonify({"success": True, "plan": plan}), 201


@admin_bp.route("/plans/<int:plan_id>", methods=["PUT"])
@require_admin
def update_plan(plan_id: int):
    return jsonify({"success": True, "plan": plan_service.update_plan(plan_id, _json_body())})


@admin_bp.route("/plans/<int:plan_id>", methods=["DELETE"])
@require_admin
def delete_plan(plan_id: int):
    return jsonify(plan_service.delete_plan(plan_id))


@admin_bp.route("/sync-plans", methods=["POST"])
@require_admin
def sync_plans():
    return jsonify(plan_service.sync_subscription_plans())


@admin_bp.route("/initialize-database", methods=["POST"])
@require_admin
def initialize_database():
    return jsonify(plan_service.initialize_database())


# ---------------------- Diagnostics ----------------------

@diagnostics_bp.route("/stripe", methods=["GET"])
@require_admin
def stripe_diagnostics():
    cfg = current_app.config
    environment = {
        key: {"present": bool(cfg.get(key)), "length": len(cfg.get(key) or "")}
        for key in DIAGNOSTIC_KEYS
    }

    connectivity = {"status": "success"}
    try:
        get_stripe_client()
        account = stripe.Account.retrieve()
        connectivity["accountId"] = stripe_value(account, "id")
    except (stripe.StripeError, ValueError) as e:
        current_app.logger.warning(f"Stripe connectivity check failed: {e}")
        connectivity = {"status": f"error: {e}"}

    return jsonify({
        "environment": environment,
        "connectivity": connectivity,
        "processedEvents": StripeEvent.query.count(),
        "timestamp": datetime.utcnow().isoformat(),
    })
