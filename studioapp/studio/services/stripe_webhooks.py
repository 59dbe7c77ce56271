# studio/services/stripe_webhooks.py
"""
Stripe webhook reconciliation.

Every event type the service knows about is listed in ``EventKind`` and
mapped to exactly one handler in ``WEBHOOK_HANDLERS`` (ignored kinds map to
``handle_ignored``). The mapping is checked at import time, so adding a kind
without deciding how to handle it fails loudly.

Each delivery is applied in a single transaction together with its
``StripeEvent`` ledger row; a delivery whose event ID is already in the
ledger is acknowledged without touching any state.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

import stripe
from flask import current_app
from sqlalchemy.exc import IntegrityError

from studio.errors import WebhookMetadataError, WebhookSignatureError
from studio.extensions import db
from studio.models import User
from studio.models_billing import StripeEvent, Subscription, SubscriptionPlan
from studio.monitoring import capture_message
from studio.services.billing import (
    create_invoice,
    create_subscription,
    get_plan,
    get_plan_by_price_id,
    lock_subscription,
    update_invoice,
)
from studio.services.policy import upgrade_credit_delta
from studio.services.stripe_service import (
    from_timestamp,
    get_stripe_client,
    invoice_subscription_id,
    stripe_path,
    stripe_value,
    subscription_period,
    subscription_price_id,
)


class EventKind(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_CREATED = "invoice.created"
    INVOICE_FINALIZED = "invoice.finalized"
    INVOICE_UPDATED = "invoice.updated"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHARGE_SUCCEEDED = "charge.succeeded"
    PAYMENT_INTENT_CREATED = "payment_intent.created"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    CUSTOMER_CREATED = "customer.created"


# Outcomes recorded in the ledger / returned to Stripe
HANDLED = "handled"
SKIPPED = "skipped"
IGNORED = "ignored"
DUPLICATE = "duplicate"
UNRECOGNIZED = "unrecognized"

Outcome = Tuple[str, str]


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str
    detail: str = ""


# ===== Signature verification =====

def construct_webhook_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """
    Verify a webhook body against its ``Stripe-Signature`` header and parse it.

    Raises:
        WebhookSignatureError: secret missing, header missing/invalid, or body unparseable
    """
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
        raise WebhookSignatureError("Webhook secret not configured")
    if not sig_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError as e:
        raise WebhookSignatureError("Invalid payload") from e

    try:
        stripe.WebhookSignature.verify_header(
            body,
            sig_header,
            secret,
            tolerance=current_app.config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(f"Invalid signature: {e}") from e

    try:
        event = json.loads(body)
    except ValueError as e:
        raise WebhookSignatureError("Invalid payload") from e

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookSignatureError("Invalid payload")
    return event


# ===== User resolution =====

def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def user_from_metadata(stripe_sub: Any) -> Optional[User]:
    user_id = _to_int(stripe_path(stripe_sub, "metadata", "userId"))
    return db.session.get(User, user_id) if user_id is not None else None


def user_from_user_subscription_id(stripe_sub: Any) -> Optional[User]:
    sub_id = stripe_value(stripe_sub, "id")
    return User.query.filter_by(stripe_subscription_id=sub_id).first() if sub_id else None


def user_from_subscription_table(stripe_sub: Any) -> Optional[User]:
    sub_id = stripe_value(stripe_sub, "id")
    if not sub_id:
        return None
    sub = Subscription.query.filter_by(stripe_subscription_id=sub_id).first()
    return sub.user if sub else None


UserResolver = Callable[[Any], Optional[User]]

# Tried in order; first hit wins
USER_RESOLVERS: Sequence[Tuple[str, UserResolver]] = (
    ("metadata", user_from_metadata),
    ("user.stripe_subscription_id", user_from_user_subscription_id),
    ("subscriptions table", user_from_subscription_table),
)


def resolve_subscription_user(
    stripe_sub: Any,
    resolvers: Iterable[Tuple[str, UserResolver]] = USER_RESOLVERS,
) -> Optional[User]:
    for name, resolver in resolvers:
        user = resolver(stripe_sub)
        if user is not None:
            current_app.logger.debug(f"Resolved user {user.id} for {stripe_value(stripe_sub, 'id')} via {name}")
            return user
    return None


def _interval_for(plan: SubscriptionPlan, price_id: Optional[str], fallback: str = "monthly") -> str:
    """Billing interval derived from the price actually on the Stripe subscription."""
    if price_id and price_id == plan.stripe_yearly_price_id:
        return "yearly"
    if price_id and price_id == plan.stripe_price_id:
        return "monthly"
    current_app.logger.warning(f"Price {price_id} does not match plan {plan.name}; assuming {fallback}")
    return fallback


# ===== Handlers =====
# Handlers never commit; the dispatcher owns the transaction.

def handle_checkout_session_completed(session: Dict[str, Any]) -> Outcome:
    if stripe_value(session, "mode") != "subscription":
        return IGNORED, f"checkout mode {stripe_value(session, 'mode')!r}"

    metadata = stripe_value(session, "metadata", {})
    if not metadata.get("userId"):
        raise WebhookMetadataError("User ID is required")
    if not metadata.get("planId"):
        raise WebhookMetadataError("Plan ID is required")

    user_id = _to_int(metadata["userId"])
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None:
        current_app.logger.warning(f"Checkout {stripe_value(session, 'id')}: user {metadata['userId']} not found")
        return SKIPPED, "user not found"

    plan = get_plan(metadata["planId"])
    if plan is None:
        current_app.logger.warning(f"Checkout {stripe_value(session, 'id')}: plan {metadata['planId']} not found")
        return SKIPPED, "plan not found"

    stripe_sub_id = stripe_value(session, "subscription")
    if not stripe_sub_id:
        current_app.logger.warning(f"Checkout {stripe_value(session, 'id')} has no subscription")
        return SKIPPED, "no subscription on session"

    get_stripe_client()
    stripe_sub = stripe.Subscription.retrieve(stripe_sub_id)
    price_id = subscription_price_id(stripe_sub)
    start, end = subscription_period(stripe_sub)

    create_subscription(
        user_id=user.id,
        plan_id=plan.id,
        stripe_subscription_id=stripe_sub_id,
        status="active",
        interval=_interval_for(plan, price_id, fallback=metadata.get("interval") or "monthly"),
        current_period_start=start,
        current_period_end=end,
        stripe_price_id=price_id,
        cancel_at_period_end=bool(stripe_value(stripe_sub, "cancel_at_period_end", False)),
        commit=False,
    )

    user.credits = (user.credits or 0) + plan.credits
    user.subscription_tier = plan.name
    user.stripe_subscription_id = stripe_sub_id
    if not user.stripe_customer_id and stripe_value(session, "customer"):
        user.stripe_customer_id = stripe_value(session, "customer")

    current_app.logger.info(
        f"Checkout completed: user {user.id} subscribed to {plan.name} ({stripe_sub_id}); +{plan.credits} credits"
    )
    return HANDLED, f"subscribed to {plan.name}"


def handle_subscription_updated(stripe_sub: Dict[str, Any]) -> Outcome:
    sub_id = stripe_value(stripe_sub, "id")
    user = resolve_subscription_user(stripe_sub)
    if user is None:
        current_app.logger.warning(f"Subscription {sub_id} updated but no user could be resolved")
        return SKIPPED, "user not found"

    price_id = subscription_price_id(stripe_sub)
    new_plan = get_plan_by_price_id(price_id) or get_plan(stripe_path(stripe_sub, "metadata", "planId"))
    status = stripe_value(stripe_sub, "status")
    start, end = subscription_period(stripe_sub)

    sub = lock_subscription(stripe_subscription_id=sub_id)
    if sub is None:
        if new_plan is None:
            current_app.logger.warning(f"Subscription {sub_id} updated but no local row or plan")
            return SKIPPED, "plan not found"
        create_subscription(
            user_id=user.id,
            plan_id=new_plan.id,
            stripe_subscription_id=sub_id,
            status=status or "active",
            interval=_interval_for(new_plan, price_id),
            current_period_start=start,
            current_period_end=end,
            stripe_price_id=price_id,
            cancel_at_period_end=bool(stripe_value(stripe_sub, "cancel_at_period_end", False)),
            commit=False,
        )
        current_app.logger.info(f"Created missing local subscription {sub_id} for user {user.id}")
        return HANDLED, "local subscription created"

    if status:
        sub.status = status
    sub.current_period_start = start or sub.current_period_start
    sub.current_period_end = end or sub.current_period_end
    sub.cancel_at_period_end = bool(stripe_value(stripe_sub, "cancel_at_period_end", False))
    if status == "canceled" and sub.canceled_at is None:
        sub.canceled_at = from_timestamp(stripe_value(stripe_sub, "canceled_at")) or datetime.utcnow()

    detail = f"status={status}"
    old_plan = sub.plan
    if new_plan is not None and old_plan is not None and new_plan.id != old_plan.id:
        delta = upgrade_credit_delta(old_plan, new_plan)
        sub.plan_id = new_plan.id
        sub.plan = new_plan
        sub.stripe_price_id = price_id
        sub.interval = _interval_for(new_plan, price_id, fallback=sub.interval)
        user.subscription_tier = new_plan.name
        if delta:
            user.credits = (user.credits or 0) + delta
        detail += f", plan {old_plan.name} -> {new_plan.name} (+{delta} credits)"

    current_app.logger.info(f"Subscription {sub_id} updated: {detail}")
    return HANDLED, detail


def handle_subscription_deleted(stripe_sub: Dict[str, Any]) -> Outcome:
    sub_id = stripe_value(stripe_sub, "id")
    user = resolve_subscription_user(stripe_sub)
    if user is None:
        current_app.logger.warning(f"Subscription {sub_id} deleted but no user could be resolved; skipping")
        return SKIPPED, "user not found"

    sub = Subscription.query.filter_by(stripe_subscription_id=sub_id).first()
    if sub is not None:
        sub.status = "canceled"
        sub.cancel_at_period_end = False
        if sub.canceled_at is None:
            sub.canceled_at = from_timestamp(stripe_value(stripe_sub, "canceled_at")) or datetime.utcnow()

    if user.stripe_subscription_id not in (None, sub_id):
        current_app.logger.info(
            f"Subscription {sub_id} deleted; user {user.id} keeps current subscription {user.stripe_subscription_id}"
        )
        return HANDLED, "superseded subscription canceled"

    # Credits stay as they are
    user.subscription_tier = current_app.config.get("FREE_PLAN_NAME", "Free")
    user.stripe_subscription_id = None

    current_app.logger.info(f"Subscription {sub_id} deleted; user {user.id} reverted to Free")
    return HANDLED, "subscription canceled"


def handle_invoice_created(invoice: Dict[str, Any]) -> Outcome:
    invoice_id = stripe_value(invoice, "id")
    sub_ref = invoice_subscription_id(invoice)
    email = stripe_value(invoice, "customer_email")
    if not sub_ref or not email:
        current_app.logger.info(f"Invoice {invoice_id} lacks subscription or customer email; skipping")
        return SKIPPED, "not a subscription invoice"

    user = None
    customer_id = stripe_value(invoice, "customer")
    if customer_id:
        user = User.query.filter_by(stripe_customer_id=customer_id).first()
    if user is None:
        user = User.query.filter_by(email=email).first()
    if user is None:
        current_app.logger.warning(f"Invoice {invoice_id}: no user for customer {customer_id} / {email}")
        return SKIPPED, "user not found"

    local_sub = Subscription.query.filter_by(stripe_subscription_id=sub_ref).first()
    number = stripe_value(invoice, "number")
    create_invoice(
        user_id=user.id,
        stripe_invoice_id=invoice_id,
        amount_cents=stripe_value(invoice, "amount_due", 0),
        currency=stripe_value(invoice, "currency", "usd"),
        status="draft",
        subscription_id=local_sub.id if local_sub else None,
        description=stripe_value(invoice, "description") or (f"Invoice {number}" if number else None),
        invoice_url=stripe_value(invoice, "hosted_invoice_url"),
        due_date=from_timestamp(stripe_value(invoice, "due_date")),
        commit=False,
    )
    current_app.logger.info(f"Recorded invoice {invoice_id} for user {user.id}")
    return HANDLED, "invoice recorded"


def handle_invoice_paid(invoice: Dict[str, Any]) -> Outcome:
    invoice_id = stripe_value(invoice, "id")
    paid_at = from_timestamp(stripe_path(invoice, "status_transitions", "paid_at")) or datetime.utcnow()
    updated = update_invoice(
        invoice_id,
        status="paid",
        paid_at=paid_at,
        invoice_url=stripe_value(invoice, "hosted_invoice_url"),
        commit=False,
    )
    if updated is None:
        current_app.logger.warning(f"Invoice {invoice_id} paid but not found locally")
        return SKIPPED, "invoice not found"
    current_app.logger.info(f"Invoice {invoice_id} marked paid")
    return HANDLED, "invoice paid"


def handle_invoice_payment_failed(invoice: Dict[str, Any]) -> Outcome:
    invoice_id = stripe_value(invoice, "id")
    updated = update_invoice(invoice_id, status="payment_failed", commit=False)
    if updated is None:
        current_app.logger.warning(f"Invoice {invoice_id} payment failed but not found locally")
        return SKIPPED, "invoice not found"
    current_app.logger.warning(f"Payment failed for invoice {invoice_id}")
    return HANDLED, "invoice payment failed"


def handle_ignored(obj: Dict[str, Any]) -> Outcome:
    current_app.logger.info(f"Ignoring {stripe_value(obj, 'object', 'object')} {stripe_value(obj, 'id')}")
    return IGNORED, "no action for this event type"


# Event handler mapping
WEBHOOK_HANDLERS: Dict[EventKind, Callable[[Dict[str, Any]], Outcome]] = {
    EventKind.CHECKOUT_SESSION_COMPLETED: handle_checkout_session_completed,
    EventKind.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    EventKind.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EventKind.INVOICE_CREATED: handle_invoice_created,
    EventKind.INVOICE_PAID: handle_invoice_paid,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: handle_invoice_paid,
    EventKind.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    EventKind.SUBSCRIPTION_CREATED: handle_ignored,
    EventKind.INVOICE_FINALIZED: handle_ignored,
    EventKind.INVOICE_UPDATED: handle_ignored,
    EventKind.CHARGE_SUCCEEDED: handle_ignored,
    EventKind.PAYMENT_INTENT_CREATED: handle_ignored,
    EventKind.PAYMENT_INTENT_SUCCEEDED: handle_ignored,
    EventKind.PAYMENT_INTENT_PAYMENT_FAILED: handle_ignored,
    EventKind.PAYMENT_METHOD_ATTACHED: handle_ignored,
    EventKind.CUSTOMER_CREATED: handle_ignored,
}


def check_handler_coverage(handlers: Dict[EventKind, Callable]) -> None:
    """Raise if any ``EventKind`` has no handler."""
    missing = [kind.value for kind in EventKind if kind not in handlers]
    if missing:
        raise RuntimeError(f"No webhook handler registered for: {', '.join(missing)}")


check_handler_coverage(WEBHOOK_HANDLERS)


# ===== Dispatch =====

def _already_processed(event_id: str) -> bool:
    return db.session.query(StripeEvent.id).filter_by(stripe_event_id=event_id).first() is not None


def process_webhook_event(event: Dict[str, Any]) -> WebhookResult:
    """
    Apply a verified Stripe event to local billing state.

    Args:
        event: Parsed Stripe event

    Returns:
        WebhookResult describing what happened

    Raises:
        WebhookMetadataError: required metadata missing (caller answers 400)
        Exception: anything else; state is rolled back and the caller answers 500
    """
    event_id = event["id"]
    event_type = event["type"]

    if _already_processed(event_id):
        current_app.logger.info(f"Webhook event {event_id} ({event_type}) already processed")
        return WebhookResult(event_id, event_type, DUPLICATE, "already processed")

    try:
        kind = EventKind(event_type)
    except ValueError:
        kind = None

    try:
        if kind is None:
            current_app.logger.warning(f"Unrecognized webhook event type: {event_type}")
            capture_message(f"Unrecognized Stripe event type {event_type}", level="warning")
            outcome, detail = UNRECOGNIZED, "unrecognized event type"
        else:
            current_app.logger.info(f"Processing webhook event {event_id}: {event_type}")
            obj = (event.get("data") or {}).get("object") or {}
            outcome, detail = WEBHOOK_HANDLERS[kind](obj)

        db.session.add(StripeEvent(stripe_event_id=event_id, event_type=event_type, outcome=outcome))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if _already_processed(event_id):
            current_app.logger.info(f"Webhook event {event_id} processed concurrently; treating as duplicate")
            return WebhookResult(event_id, event_type, DUPLICATE, "processed concurrently")
        current_app.logger.error(f"Integrity error processing webhook event {event_id} ({event_type})", exc_info=True)
        raise
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error processing webhook event {event_id} ({event_type}): {e}", exc_info=True)
        raise

    return WebhookResult(event_id, event_type, outcome, detail)
