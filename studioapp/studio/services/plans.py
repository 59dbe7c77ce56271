# studio/services/plans.py
"""
Plan catalog and admin billing operations.

Provides:
- Catalog seeding / sync for the Free, Lite and Pro plans
- Admin plan CRUD mirrored to Stripe products and prices
- Admin subscription listing, cancel and reactivate
- Dashboard statistics
"""
from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe
from flask import current_app

from studio.errors import BillingValidationError, NotFoundError
from studio.extensions import db
from studio.models import User
from studio.models_billing import Subscription, SubscriptionPlan
from studio.services.billing import billing_action
from studio.services.stripe_service import (
    cents_to_dollars,
    dollars_to_cents,
    get_stripe_client,
    stripe_value,
)

STRIPE_INTERVALS = ("month", "year")


def default_plan_catalog() -> List[Dict[str, Any]]:
    cfg = current_app.config
    return [
        {
            "name": cfg.get("FREE_PLAN_NAME", "Free"),
            "display_name": "Free",
            "description": "100 free credits, no credit card required.",
            "credits": 100,
            "price": Decimal("0"),
            "yearly_price": Decimal("0"),
            "stripe_price_id": None,
            "stripe_yearly_price_id": None,
            "features": [
                "AI text, image & voice generation",
                "100 credits included",
                "1GB cloud storage",
                "Basic AI models",
                "Email support",
            ],
        },
        {
            "name": "Lite",
            "display_name": "Lite",
            "description": "Perfect for individual creators and small teams.",
            "credits": 9000,
            "price": Decimal("9.99"),
            "yearly_price": Decimal("95.90"),
            "stripe_price_id": cfg.get("STRIPE_LITE_PRICE_ID") or None,
            "stripe_yearly_price_id": cfg.get("STRIPE_LITE_YEARLY_PRICE_ID") or None,
            "features": [
                "9000 credits/month",
                "AI text, image & voice generation",
                "5GB cloud storage",
                "Standard AI models",
                "Email support",
            ],
        },
        {
            "name": "Pro",
            "display_name": "Pro",
            "description": "Ideal for freelancers and growing content teams.",
            "credits": 25000,
            "price": Decimal("19.99"),
            "yearly_price": Decimal("191.90"),
            "stripe_price_id": cfg.get("STRIPE_PRO_PRICE_ID") or None,
            "stripe_yearly_price_id": cfg.get("STRIPE_PRO_YEARLY_PRICE_ID") or None,
            "features": [
                "25000 credits/month",
                "Advanced AI models",
                "25GB cloud storage",
                "Priority email support",
                "Export in HD (images & audio)",
            ],
        },
    ]


# ===== Catalog =====

@billing_action("Failed to seed subscription plans")
def seed_subscription_plans(overwrite: bool = False) -> Dict[str, List[str]]:
    """
    Upsert the default catalog by plan name.

    Args:
        overwrite: Also refresh plans that already exist

    Returns:
        {"created": [...], "updated": [...]}
    """
    created, updated = [], []
    for entry in default_plan_catalog():
        plan = SubscriptionPlan.query.filter_by(name=entry["name"]).first()
        if plan is None:
            plan = SubscriptionPlan(is_active=True, **entry)
            db.session.add(plan)
            created.append(entry["name"])
        elif overwrite:
            for key, value in entry.items():
                setattr(plan, key, value)
            plan.is_active = True
            updated.append(entry["name"])
    db.session.commit()

    current_app.logger.info(f"Plan catalog seeded: created={created} updated={updated}")
    return {"created": created, "updated": updated}


def sync_subscription_plans() -> Dict[str, Any]:
    result = seed_subscription_plans(overwrite=True)
    return {"success": True, **result}


@billing_action("Failed to initialize database")
def initialize_database() -> Dict[str, Any]:
    db.create_all()
    seeded = False
    if SubscriptionPlan.query.count() < 3:
        seed_subscription_plans()
        seeded = True
    return {"success": True, "seeded": seeded, "planCount": SubscriptionPlan.query.count()}


# ===== Dashboard =====

def get_dashboard_stats() -> Dict[str, Any]:
    active = Subscription.query.filter_by(status="active").all()

    monthly_revenue = Decimal(0)
    for sub in active:
        plan = sub.plan
        if plan is None:
            continue
        if sub.interval == "yearly":
            yearly = plan.yearly_price if plan.yearly_price is not None else Decimal(plan.price or 0) * 12
            monthly_revenue += Decimal(yearly) / 12
        else:
            monthly_revenue += Decimal(plan.price or 0)

    return {
        "totalUsers": User.query.count(),
        "activeSubscriptions": len(active),
        "monthlyRevenue": dollars_to_cents(monthly_revenue),
        "totalPlans": SubscriptionPlan.query.filter_by(is_active=True).count(),
    }


# ===== Admin subscriptions =====

def list_subscriptions() -> List[Dict[str, Any]]:
    subs = Subscription.query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()
    return [s.to_dict(include_user=True) for s in subs]


def _get_subscription(subscription_id) -> Subscription:
    sub = db.session.get(Subscription, int(subscription_id))
    if sub is None:
        raise NotFoundError("Subscription not found")
    return sub


@billing_action("Failed to cancel subscription")
def admin_cancel_subscription(subscription_id) -> Dict[str, Any]:
    """Cancel at Stripe when possible, then mark the local row canceled regardless."""
    sub = _get_subscription(subscription_id)
    if sub.stripe_subscription_id:
        try:
            get_stripe_client()
            stripe.Subscription.cancel(sub.stripe_subscription_id)
        except (stripe.StripeError, ValueError) as e:
            current_app.logger.warning(f"Stripe cancel failed for {sub.stripe_subscription_id}, continuing: {e}")

    sub.status = "canceled"
    sub.canceled_at = datetime.utcnow()
    sub.cancel_at_period_end = False
    db.session.commit()

    current_app.logger.info(f"Admin canceled subscription {sub.id}")
    return {"success": True, "subscription": sub.to_dict()}


@billing_action("Failed to reactivate subscription")
def admin_reactivate_subscription(subscription_id) -> Dict[str, Any]:
    """Undo a scheduled period-end cancellation. Canceled subscriptions stay canceled."""
    sub = _get_subscription(subscription_id)
    if sub.status == "canceled":
        raise BillingValidationError("Canceled subscriptions cannot be reactivated")

    if sub.stripe_subscription_id and sub.cancel_at_period_end:
        get_stripe_client()
        stripe.Subscription.modify(sub.stripe_subscription_id, cancel_at_period_end=False)

    # status keeps mirroring Stripe
    sub.cancel_at_period_end = False
    db.session.commit()

    current_app.logger.info(f"Admin reactivated subscription {sub.id}")
    return {"success": True, "subscription": sub.to_dict()}


# ===== Admin plans =====

def _admin_plan_dict(plan: SubscriptionPlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.display_name,
        "slug": plan.name,
        "description": plan.description,
        "credits": plan.credits,
        "price": dollars_to_cents(plan.price),
        "yearlyPrice": dollars_to_cents(plan.yearly_price) if plan.yearly_price is not None else None,
        "interval": "month",
        "features": plan.features or [],
        "stripePriceId": plan.stripe_price_id,
        "stripeYearlyPriceId": plan.stripe_yearly_price_id,
        "active": plan.is_active,
    }


def list_plans_admin() -> List[Dict[str, Any]]:
    plans = SubscriptionPlan.query.order_by(SubscriptionPlan.price.asc()).all()
    return [_admin_plan_dict(p) for p in plans]


def _slug(name: str) -> str:
    return re.sub(r"\s+", "_", name.strip().lower())


def _whole_number(value: Any, field: str) -> int:
    """Non-negative integer from JSON input (cents or credits)."""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise BillingValidationError(f"{field} must be a non-negative whole number")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise BillingValidationError(f"{field} must be a non-negative whole number") from None
    if number < 0:
        raise BillingValidationError(f"{field} must be a non-negative whole number")
    return number


def _archive_price(price_id: Optional[str]) -> None:
    if not price_id:
        return
    try:
        stripe.Price.modify(price_id, active=False)
    except stripe.StripeError as e:
        current_app.logger.warning(f"Failed to archive Stripe price {price_id}: {e}")


@billing_action("Failed to create subscription plan")
def create_plan(
    name: str,
    price: int,
    interval: str = "month",
    description: Optional[str] = None,
    features: Optional[List[str]] = None,
    stripe_price_id: Optional[str] = None,
    credits: int = 0,
) -> Dict[str, Any]:
    """
    Create a plan backed by a Stripe price.

    Args:
        name: Display name (the unique plan name is derived from it)
        price: Amount in cents
        interval: "month" or "year"
        stripe_price_id: Existing Stripe price to attach instead of creating one

    Returns:
        The new plan in admin shape (prices in cents)
    """
    if not name or not price or interval not in STRIPE_INTERVALS:
        raise BillingValidationError("Name, price, and interval are required")
    price = _whole_number(price, "price")
    credits = _whole_number(credits or 0, "credits")

    slug = _slug(name)
    if SubscriptionPlan.query.filter_by(name=slug).first():
        raise BillingValidationError("A plan with this name already exists")

    get_stripe_client()
    if stripe_price_id:
        try:
            price_obj = stripe.Price.retrieve(stripe_price_id)
        except stripe.StripeError as e:
            raise BillingValidationError("Invalid Stripe price ID") from e
    else:
        product = stripe.Product.create(name=name, description=description or None)
        price_obj = stripe.Price.create(
            unit_amount=price,
            currency="usd",
            recurring={"interval": interval},
            product=stripe_value(product, "id"),
        )

    price_id = stripe_value(price_obj, "id")
    dollars = cents_to_dollars(price)
    plan = SubscriptionPlan(
        name=slug,
        display_name=name,
        description=description,
        credits=credits,
        price=dollars,
        yearly_price=dollars if interval == "year" else None,
        features=list(features or []),
        stripe_price_id=price_id,
        stripe_yearly_price_id=price_id if interval == "year" else None,
        is_active=True,
    )
    db.session.add(plan)
    db.session.commit()

    current_app.logger.info(f"Created plan {plan.name} with Stripe price {price_id}")
    return _admin_plan_dict(plan)


def _sync_yearly_price(plan: SubscriptionPlan, yearly_cents: Optional[int]) -> Optional[str]:
    """Stripe prices are immutable: archive the old yearly price and create a new one when it changes."""
    current = plan.stripe_yearly_price_id
    if not plan.stripe_price_id:
        return current

    if yearly_cents and yearly_cents > 0:
        unchanged = (
            current
            and plan.yearly_price is not None
            and dollars_to_cents(plan.yearly_price) == int(yearly_cents)
        )
        if unchanged:
            return current
        monthly = stripe.Price.retrieve(plan.stripe_price_id)
        product = stripe_value(monthly, "product")
        if product is not None and not isinstance(product, str):
            product = stripe_value(product, "id")
        if current:
            stripe.Price.modify(current, active=False)
        new_price = stripe.Price.create(
            unit_amount=int(yearly_cents),
            currency="usd",
            recurring={"interval": "year"},
            product=product,
        )
        return stripe_value(new_price, "id")

    if current:
        stripe.Price.modify(current, active=False)
    return None


@billing_action("Failed to update subscription plan")
def update_plan(plan_id, data: Dict[str, Any]) -> Dict[str, Any]:
    plan = db.session.get(SubscriptionPlan, int(plan_id))
    if plan is None:
        raise NotFoundError("Plan not found")

    numbers = {
        key: _whole_number(data[key], key)
        for key in ("credits", "price", "yearlyPrice")
        if data.get(key) is not None
    }

    if "yearlyPrice" in data:
        yearly = numbers.get("yearlyPrice")
        get_stripe_client()
        plan.stripe_yearly_price_id = _sync_yearly_price(plan, yearly)
        plan.yearly_price = cents_to_dollars(yearly) if yearly else None

    if data.get("name"):
        plan.name = data["name"]
    if data.get("displayName"):
        plan.display_name = data["displayName"]
    if "description" in data:
        plan.description = data["description"]
    if "credits" in numbers:
        plan.credits = numbers["credits"]
    if "price" in numbers:
        plan.price = cents_to_dollars(numbers["price"])
    if data.get("features") is not None:
        plan.features = list(data["features"])
    if data.get("isActive") is not None:
        plan.is_active = bool(data["isActive"])
    db.session.commit()

    current_app.logger.info(f"Updated plan {plan.name}")
    return _admin_plan_dict(plan)


@billing_action("Failed to delete subscription plan")
def delete_plan(plan_id) -> Dict[str, Any]:
    plan = db.session.get(SubscriptionPlan, int(plan_id))
    if plan is None:
        raise NotFoundError("Plan not found")
    if plan.subscriptions.count() > 0:
        raise BillingValidationError("Cannot delete plan with active subscriptions")

    if plan.stripe_price_id or plan.stripe_yearly_price_id:
        get_stripe_client()
        _archive_price(plan.stripe_price_id)
        _archive_price(plan.stripe_yearly_price_id)

    db.session.delete(plan)
    db.session.commit()

    current_app.logger.info(f"Deleted plan {plan_id}")
    return {"success": True, "message": "Plan deleted successfully"}
