# studio/services/billing.py
"""
Billing actions consumed by the JSON API.

Provides:
- Plan, subscription, invoice and payment reads for the current user
- Checkout, cancellation, plan change, renewal and billing-portal flows
- Credit synchronisation from the user's resolved plan
- CRUD helpers shared with the webhook handlers
- Subscription metrics for the admin dashboard

Stripe and database failures are rolled back, logged and re-raised as a
generic ``BillingError``; validation, auth and not-found errors propagate
as-is.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from functools import wraps
from typing import Any, Dict, List, Optional

import stripe
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import lazyload

from studio.errors import (
    AuthenticationError,
    BillingError,
    BillingValidationError,
    NotFoundError,
)
from studio.extensions import db
from studio.models import User
from studio.models_billing import (
    ACTIVE_STATES,
    Invoice,
    Payment,
    Subscription,
    SubscriptionPlan,
)
from studio.monitoring import capture_exception
from studio.services.policy import reconcile_revenue, upgrade_credit_delta
from studio.services.stripe_service import (
    cents_to_dollars,
    get_or_create_stripe_customer,
    get_stripe_client,
    invoice_payment_refs,
    stripe_path,
    stripe_value,
    subscription_period,
)

INTERVALS = ("monthly", "yearly")
CREDIT_MODES = ("overwrite", "increment")
FAILED_PAYMENT_STATES = ("failed", "requires_payment_method", "requires_action")


def billing_action(message: str):
    """Roll back and translate provider/database failures into ``BillingError(message)``."""
    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except BillingError:
                db.session.rollback()
                raise
            except (stripe.StripeError, SQLAlchemyError, ValueError) as e:
                db.session.rollback()
                current_app.logger.error(f"{fn.__name__} failed: {e}", exc_info=True)
                raise BillingError(message) from e
        return wrapped
    return decorator


# ===== Lookups =====

def _require_user(user_id) -> User:
    if not user_id:
        raise AuthenticationError("User not authenticated")
    user = db.session.get(User, int(user_id))
    if user is None:
        raise NotFoundError("User not found")
    return user


def get_plan(plan_ref) -> Optional[SubscriptionPlan]:
    """Resolve a plan by primary key, falling back to its unique name."""
    if plan_ref in (None, ""):
        return None
    try:
        return db.session.get(SubscriptionPlan, int(plan_ref))
    except (TypeError, ValueError):
        return SubscriptionPlan.query.filter_by(name=str(plan_ref)).first()


def get_free_plan() -> Optional[SubscriptionPlan]:
    return SubscriptionPlan.query.filter_by(name=current_app.config.get("FREE_PLAN_NAME", "Free")).first()


def get_plan_by_price_id(price_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not price_id:
        return None
    return SubscriptionPlan.query.filter(
        (SubscriptionPlan.stripe_price_id == price_id)
        | (SubscriptionPlan.stripe_yearly_price_id == price_id)
    ).first()


def _billing_url(suffix: str = "") -> str:
    base = (current_app.config.get("APP_URL") or "").rstrip("/")
    return f"{base}/app/settings/billing{suffix}"


# ===== Reads =====

def get_subscription_plans() -> List[SubscriptionPlan]:
    return (
        SubscriptionPlan.query.filter_by(is_active=True)
        .order_by(SubscriptionPlan.price.asc())
        .all()
    )


def get_user_subscription(user_id) -> Optional[Subscription]:
    """Most recent active or trialing subscription for a user."""
    return (
        Subscription.query.filter(
            Subscription.user_id == int(user_id),
            Subscription.status.in_(ACTIVE_STATES),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )


def locked_subscription_query(**criteria):
    # plan is eager-joined by default; FOR UPDATE must not cover the outer join
    return (
        Subscription.query.options(lazyload(Subscription.plan))
        .filter_by(**criteria)
        .with_for_update()
        .populate_existing()
    )


def lock_subscription(**criteria) -> Optional[Subscription]:
    """
    Load a subscription and hold its row lock until the transaction ends.

    API plan changes and the ``customer.subscription.updated`` webhook both
    read the current plan through this, so the later one sees the plan the
    earlier one stored.
    """
    return locked_subscription_query(**criteria).first()


def get_user_invoices(user_id, limit: int = 10) -> List[Invoice]:
    return (
        Invoice.query.filter_by(user_id=int(user_id))
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
        .limit(limit)
        .all()
    )


def get_user_payments(user_id, limit: int = 10) -> List[Payment]:
    return (
        Payment.query.filter_by(user_id=int(user_id))
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .all()
    )


def get_user_billing_history(user_id, limit: int = 20) -> Dict[str, Any]:
    user = _require_user(user_id)
    return {
        "invoices": [i.to_dict() for i in get_user_invoices(user.id, limit)],
        "payments": [p.to_dict() for p in get_user_payments(user.id, limit)],
    }


def get_user_credits(user_id) -> int:
    return _require_user(user_id).credits


def get_current_tier(user_id) -> Dict[str, Any]:
    """Tier precedence: subscription plan name, then the cached tier, then Free."""
    user = _require_user(user_id)
    sub = get_user_subscription(user.id)
    tier = (sub.plan.name if sub and sub.plan else None) or user.subscription_tier or "Free"
    return {
        "subscription": sub.to_dict() if sub else None,
        "currentTier": tier,
    }


def get_payment_issues(user_id) -> Dict[str, Any]:
    user = _require_user(user_id)
    now = datetime.utcnow()

    failed_payments = (
        Payment.query.filter(
            Payment.user_id == user.id,
            Payment.status.in_(FAILED_PAYMENT_STATES),
            Payment.created_at >= now - timedelta(days=90),
        )
        .order_by(Payment.created_at.desc())
        .all()
    )
    current = (
        Subscription.query.filter(
            Subscription.user_id == user.id,
            Subscription.status.in_(("active", "past_due", "unpaid")),
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .first()
    )

    issues = []
    status = current.status if current else None
    if status == "past_due":
        issues.append({
            "type": "overdue",
            "message": "Your subscription payment is overdue. Please update your payment method to avoid service interruption.",
            "actionRequired": True,
        })
    if status == "unpaid":
        issues.append({
            "type": "failed",
            "message": "Your subscription is unpaid. Access to premium features may be limited.",
            "actionRequired": True,
        })
    if any(p.status == "requires_action" for p in failed_payments):
        issues.append({
            "type": "requires_action",
            "message": "Some payments require additional authentication. Please complete the payment process.",
            "actionRequired": True,
        })
    recent = [p for p in failed_payments if p.created_at and p.created_at > now - timedelta(days=7)]
    if recent:
        issues.append({
            "type": "failed",
            "message": f"{len(recent)} payment(s) failed in the last week. Please check your payment method.",
            "actionRequired": True,
        })

    return {
        "failedPayments": [p.to_dict() for p in failed_payments],
        "issues": issues,
        "subscriptionStatus": status,
    }


# ===== Checkout / portal =====

@billing_action("Failed to create checkout session")
def create_checkout_session(user_id, plan_id, interval: str = "monthly") -> Dict[str, str]:
    """
    Start a Stripe Checkout flow for a plan.

    Args:
        user_id: Session user ID
        plan_id: SubscriptionPlan primary key (or name)
        interval: "monthly" or "yearly"

    Returns:
        {"url": <Stripe-hosted checkout URL>}
    """
    user = _require_user(user_id)
    if interval not in INTERVALS:
        raise BillingValidationError("Invalid billing interval")

    plan = get_plan(plan_id)
    if plan is None or not plan.is_active:
        raise BillingValidationError("Invalid plan")

    price_id = plan.price_id_for(interval)
    if not price_id:
        raise BillingValidationError("Price ID not found for this plan and interval")

    get_stripe_client()
    customer_id = get_or_create_stripe_customer(user)

    metadata = {"userId": str(user.id), "planId": str(plan.id), "interval": interval}
    session = stripe.checkout.Session.create(
        customer=customer_id,
        payment_method_types=["card"],
        line_items=[{"price": price_id, "quantity": 1}],
        mode="subscription",
        success_url=_billing_url("?success=true"),
        cancel_url=_billing_url("?canceled=true"),
        metadata=metadata,
        subscription_data={"metadata": metadata},
    )

    url = stripe_value(session, "url")
    if not url:
        raise BillingError("Failed to create checkout session")

    current_app.logger.info(
        f"Created checkout session {stripe_value(session, 'id')} for user {user.id} plan={plan.name} interval={interval}"
    )
    return {"url": url}


@billing_action("Failed to open billing portal")
def create_billing_portal_session(user_id) -> Dict[str, str]:
    user = _require_user(user_id)
    get_stripe_client()
    customer_id = get_or_create_stripe_customer(user)
    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=_billing_url(),
    )
    return {"url": stripe_value(session, "url")}


# ===== Cancellation =====

def _unused_fraction(sub: Subscription, at: datetime) -> Decimal:
    start, end = sub.current_period_start, sub.current_period_end
    if not start or not end or end <= start or at >= end:
        return Decimal(0)
    remaining = Decimal((end - max(at, start)).total_seconds())
    total = Decimal((end - start).total_seconds())
    return min(max(remaining / total, Decimal(0)), Decimal(1))


def _attempt_prorated_refund(sub: Subscription, canceled_at: datetime) -> bool:
    """
    Refund the unused share of the latest paid invoice.

    Failures are logged and reported but never raised; the cancellation it
    follows is already committed.
    """
    if not sub.stripe_subscription_id:
        return False
    try:
        invoices = stripe.Invoice.list(
            subscription=sub.stripe_subscription_id,
            status="paid",
            limit=1,
            expand=["data.payments"],
        )
        data = stripe_value(invoices, "data", [])
        if not data:
            current_app.logger.info(f"No paid invoice to refund for subscription {sub.stripe_subscription_id}")
            return False

        invoice = data[0]
        refund_cents = int(Decimal(stripe_value(invoice, "amount_paid", 0)) * _unused_fraction(sub, canceled_at))
        if refund_cents <= 0:
            return False

        payment_intent, charge = invoice_payment_refs(invoice)
        if not payment_intent and not charge:
            current_app.logger.warning(f"Invoice {stripe_value(invoice, 'id')} has no payment to refund")
            return False

        params = {
            "amount": refund_cents,
            "metadata": {"userId": str(sub.user_id), "stripeSubscriptionId": sub.stripe_subscription_id},
        }
        if payment_intent:
            params["payment_intent"] = payment_intent
        else:
            params["charge"] = charge
        stripe.Refund.create(**params)

        if payment_intent:
            update_payment(
                payment_intent,
                refunded=True,
                refunded_amount_cents=refund_cents,
            )
        current_app.logger.info(
            f"Refunded {refund_cents} cents for canceled subscription {sub.stripe_subscription_id}"
        )
        return True
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(
            f"Refund after cancellation failed for subscription {sub.stripe_subscription_id}: {e}",
            exc_info=True,
        )
        capture_exception(e, refund={"subscription": sub.stripe_subscription_id, "user_id": sub.user_id})
        return False


@billing_action("Failed to cancel subscription")
def cancel_user_subscription(user_id, immediately: bool = False) -> Dict[str, Any]:
    """
    Cancel the user's current subscription.

    Immediate cancellation is refused while the user still holds more credits
    than the plan grants per period. When allowed, the user falls back to the
    Free plan's credit allotment and a prorated refund is attempted.

    Args:
        user_id: Session user ID
        immediately: Cancel now instead of at period end

    Returns:
        {"success": True, "immediately": bool, "refunded": bool}
    """
    user = _require_user(user_id)
    sub = get_user_subscription(user.id)
    if sub is None:
        raise NotFoundError("No active subscription found")

    if not immediately:
        get_stripe_client()
        if sub.stripe_subscription_id:
            stripe.Subscription.modify(sub.stripe_subscription_id, cancel_at_period_end=True)
        sub.cancel_at_period_end = True
        db.session.commit()
        current_app.logger.info(f"Subscription {sub.id} scheduled for cancellation at period end")
        return {"success": True, "immediately": False, "refunded": False}

    plan_credits = sub.plan.credits if sub.plan else 0
    if user.credits > plan_credits:
        raise BillingValidationError(
            "You still have unused credits. Use them or cancel at the end of the billing period instead."
        )

    get_stripe_client()
    if sub.stripe_subscription_id:
        stripe.Subscription.cancel(sub.stripe_subscription_id)

    now = datetime.utcnow()
    free = get_free_plan()
    sub.status = "canceled"
    sub.canceled_at = now
    sub.cancel_at_period_end = False
    user.credits = free.credits if free else 0
    user.subscription_tier = free.name if free else "Free"
    user.stripe_subscription_id = None
    db.session.commit()
    current_app.logger.info(f"Subscription {sub.id} canceled immediately for user {user.id}")

    refunded = _attempt_prorated_refund(sub, now)
    return {"success": True, "immediately": True, "refunded": refunded}


# ===== Credits / plan changes =====

@billing_action("Failed to update credits")
def update_user_credits_based_on_plan(user_id, mode: str = "overwrite") -> Dict[str, Any]:
    """Set (or top up) credits from the active plan, or the Free plan when there is none."""
    if mode not in CREDIT_MODES:
        raise BillingValidationError(f"Unknown credit mode: {mode}")
    user = _require_user(user_id)
    sub = get_user_subscription(user.id)
    plan = sub.plan if sub else get_free_plan()
    if plan is None:
        raise NotFoundError("No plan found")

    if mode == "increment":
        user.credits = (user.credits or 0) + plan.credits
    else:
        user.credits = plan.credits
    db.session.commit()

    current_app.logger.info(f"Credits for user {user.id} set to {user.credits} from plan {plan.name} ({mode})")
    return {"success": True, "credits": user.credits, "plan": plan.name}


@billing_action("Failed to change subscription")
def change_subscription_plan(user_id, plan_id, interval: str = "monthly") -> Dict[str, Any]:
    user = _require_user(user_id)
    if interval not in INTERVALS:
        raise BillingValidationError("Invalid billing interval")

    sub = get_user_subscription(user.id)
    if sub is not None:
        sub = lock_subscription(id=sub.id)
    if sub is None or sub.status not in ACTIVE_STATES or not sub.stripe_subscription_id:
        raise NotFoundError("No active subscription found")

    new_plan = get_plan(plan_id)
    if new_plan is None:
        raise NotFoundError("Plan not found")
    price_id = new_plan.price_id_for(interval)
    if not price_id:
        raise BillingValidationError(f"{interval} billing not available for this plan")

    get_stripe_client()
    stripe_sub = stripe.Subscription.retrieve(sub.stripe_subscription_id)
    item_id = stripe_path(stripe_sub, "items", "data", 0, "id")
    if not item_id:
        raise NotFoundError("Subscription item not found")

    stripe.Subscription.modify(
        sub.stripe_subscription_id,
        items=[{"id": item_id, "price": price_id}],
        proration_behavior="create_prorations",
        metadata={"userId": str(user.id), "planId": str(new_plan.id), "interval": interval},
    )

    delta = upgrade_credit_delta(sub.plan, new_plan)
    sub.plan_id = new_plan.id
    sub.plan = new_plan
    sub.stripe_price_id = price_id
    sub.interval = interval
    user.subscription_tier = new_plan.name
    if delta:
        user.credits = (user.credits or 0) + delta
    db.session.commit()

    current_app.logger.info(
        f"Subscription {sub.stripe_subscription_id} moved to {new_plan.name}/{interval} (credits +{delta})"
    )
    return {"success": True, "message": "Subscription updated successfully", "creditsAdded": delta}


@billing_action("Failed to process subscription renewal")
def process_subscription_renewal(stripe_subscription_id: str) -> Dict[str, Any]:
    """Refresh period bounds from Stripe and grant the plan's credits for the new period."""
    if not stripe_subscription_id:
        raise BillingValidationError("Stripe subscription ID is required")
    sub = Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()
    if sub is None:
        raise NotFoundError("Subscription not found")

    get_stripe_client()
    stripe_sub = stripe.Subscription.retrieve(stripe_subscription_id)
    start, end = subscription_period(stripe_sub)
    sub.current_period_start = start or sub.current_period_start
    sub.current_period_end = end or sub.current_period_end
    sub.status = stripe_value(stripe_sub, "status", sub.status)

    user = sub.user
    user.credits = (user.credits or 0) + (sub.plan.credits if sub.plan else 0)
    db.session.commit()

    current_app.logger.info(f"Renewed subscription {stripe_subscription_id}; user {user.id} now has {user.credits} credits")
    return {"success": True, "credits": user.credits}


# ===== CRUD helpers (cents in, dollars stored) =====

def _finish(commit: bool) -> None:
    if commit:
        db.session.commit()
    else:
        db.session.flush()


@billing_action("Failed to save subscription")
def create_subscription(
    user_id: int,
    plan_id: int,
    stripe_subscription_id: str,
    status: str = "active",
    interval: str = "monthly",
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    stripe_price_id: Optional[str] = None,
    cancel_at_period_end: bool = False,
    commit: bool = True,
) -> Subscription:
    sub = Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()
    if sub is None:
        sub = Subscription(stripe_subscription_id=stripe_subscription_id)
        db.session.add(sub)
    sub.user_id = user_id
    sub.plan_id = plan_id
    sub.status = status
    sub.interval = interval
    sub.current_period_start = current_period_start
    sub.current_period_end = current_period_end
    sub.stripe_price_id = stripe_price_id
    sub.cancel_at_period_end = cancel_at_period_end
    _finish(commit)
    return sub


_SUBSCRIPTION_FIELDS = (
    "plan_id", "status", "interval", "current_period_start", "current_period_end",
    "cancel_at_period_end", "canceled_at", "stripe_price_id",
)


@billing_action("Failed to save subscription")
def update_subscription(stripe_subscription_id: str, commit: bool = True, **fields) -> Optional[Subscription]:
    sub = Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()
    if sub is None:
        return None
    for key, value in fields.items():
        if key not in _SUBSCRIPTION_FIELDS:
            raise BillingValidationError(f"Unknown subscription field: {key}")
        setattr(sub, key, value)
    _finish(commit)
    return sub


@billing_action("Failed to save invoice")
def create_invoice(
    user_id: int,
    stripe_invoice_id: str,
    amount_cents: Optional[int],
    currency: str = "usd",
    status: str = "draft",
    subscription_id: Optional[int] = None,
    description: Optional[str] = None,
    invoice_url: Optional[str] = None,
    due_date: Optional[datetime] = None,
    commit: bool = True,
) -> Invoice:
    invoice = Invoice.query.filter_by(stripe_invoice_id=stripe_invoice_id).first()
    if invoice is None:
        invoice = Invoice(stripe_invoice_id=stripe_invoice_id)
        db.session.add(invoice)
    invoice.user_id = user_id
    invoice.subscription_id = subscription_id
    invoice.amount = cents_to_dollars(amount_cents)
    invoice.currency = (currency or "usd").lower()
    invoice.status = status
    invoice.description = description
    invoice.invoice_url = invoice_url
    invoice.due_date = due_date
    _finish(commit)
    return invoice


@billing_action("Failed to save invoice")
def update_invoice(
    stripe_invoice_id: str,
    status: Optional[str] = None,
    amount_cents: Optional[int] = None,
    paid_at: Optional[datetime] = None,
    invoice_url: Optional[str] = None,
    commit: bool = True,
) -> Optional[Invoice]:
    invoice = Invoice.query.filter_by(stripe_invoice_id=stripe_invoice_id).first()
    if invoice is None:
        return None
    if status is not None:
        invoice.status = status
    if amount_cents is not None:
        invoice.amount = cents_to_dollars(amount_cents)
    if paid_at is not None:
        invoice.paid_at = paid_at
    if invoice_url is not None:
        invoice.invoice_url = invoice_url
    _finish(commit)
    return invoice


@billing_action("Failed to save payment")
def create_payment(
    user_id: int,
    amount_cents: Optional[int],
    status: str,
    stripe_payment_intent_id: Optional[str] = None,
    invoice_id: Optional[int] = None,
    currency: str = "usd",
    payment_method: Optional[str] = None,
    description: Optional[str] = None,
    commit: bool = True,
) -> Payment:
    payment = None
    if stripe_payment_intent_id:
        payment = Payment.query.filter_by(stripe_payment_intent_id=stripe_payment_intent_id).first()
    if payment is None:
        payment = Payment(stripe_payment_intent_id=stripe_payment_intent_id)
        db.session.add(payment)
    payment.user_id = user_id
    payment.invoice_id = invoice_id
    payment.amount = cents_to_dollars(amount_cents)
    payment.currency = (currency or "usd").lower()
    payment.status = status
    payment.payment_method = payment_method
    payment.description = description
    _finish(commit)
    return payment


@billing_action("Failed to save payment")
def update_payment(
    stripe_payment_intent_id: str,
    status: Optional[str] = None,
    refunded: Optional[bool] = None,
    refunded_amount_cents: Optional[int] = None,
    commit: bool = True,
) -> Optional[Payment]:
    payment = Payment.query.filter_by(stripe_payment_intent_id=stripe_payment_intent_id).first()
    if payment is None:
        return None
    if status is not None:
        payment.status = status
    if refunded is not None:
        payment.refunded = refunded
    if refunded_amount_cents is not None:
        payment.refunded_amount = cents_to_dollars(refunded_amount_cents)
    _finish(commit)
    return payment


# ===== Metrics =====

def get_subscription_metrics() -> Dict[str, Any]:
    subs = Subscription.query.all()
    active = [s for s in subs if s.status == "active"]
    canceled = [s for s in subs if s.status == "canceled"]

    payment_total = sum(
        (Decimal(p.amount or 0) for p in Payment.query.filter_by(status="succeeded").all()),
        Decimal(0),
    )
    invoice_total = sum(
        (Decimal(i.amount or 0) for i in Invoice.query.filter_by(status="paid").all()),
        Decimal(0),
    )

    distribution: Dict[int, Dict[str, Any]] = {}
    for s in active:
        entry = distribution.setdefault(
            s.plan_id,
            {"planId": s.plan_id, "planName": s.plan.name if s.plan else None, "count": 0},
        )
        entry["count"] += 1

    return {
        "totalSubscriptions": len(subs),
        "activeSubscriptions": len(active),
        "canceledSubscriptions": len(canceled),
        "totalRevenue": float(reconcile_revenue(payment_total, invoice_total)),
        "paymentRevenue": float(payment_total),
        "invoiceRevenue": float(invoice_total),
        "planDistribution": sorted(distribution.values(), key=lambda d: d["count"], reverse=True),
    }
