# studio/services/stripe_service.py
"""
Thin helpers around the Stripe SDK.

Provides:
- Client configuration from app config
- Customer lookup/creation for a user
- Money and timestamp conversion at the Stripe boundary
- Tolerant field access for Stripe objects and plain webhook dicts
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple

import stripe
from flask import current_app

from studio.extensions import db
from studio.models import User


def get_stripe_client() -> stripe:
    """Get configured Stripe client."""
    api_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not api_key:
        raise ValueError("STRIPE_SECRET_KEY not configured")
    stripe.api_key = api_key
    return stripe


def cents_to_dollars(cents: Optional[int]) -> Decimal:
    """Convert a Stripe integer amount (cents) to stored dollars, exactly."""
    if cents is None:
        return Decimal("0.00")
    return (Decimal(int(cents)) / Decimal(100)).quantize(Decimal("0.01"))


def dollars_to_cents(dollars: Any) -> int:
    if dollars is None:
        return 0
    return int((Decimal(str(dollars)) * 100).to_integral_value())


def stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """
    Read a field from a Stripe object or a plain dict.

    Missing keys and explicit nulls both fall back to ``default``.
    """
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, None)
    return default if value is None else value


def stripe_path(obj: Any, *keys: Any, default: Any = None) -> Any:
    """Walk nested Stripe fields, e.g. ``stripe_path(sub, "items", "data", 0, "price", "id")``."""
    current = obj
    for key in keys:
        if current is None:
            return default
        if isinstance(key, int):
            try:
                current = current[key]
            except (IndexError, KeyError, TypeError):
                return default
        else:
            current = stripe_value(current, key)
    return default if current is None else current


def from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    """Unix seconds to a naive UTC datetime (matches ``datetime.utcnow`` columns)."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)


def subscription_price_id(stripe_sub: Any) -> Optional[str]:
    return stripe_path(stripe_sub, "items", "data", 0, "price", "id")


def subscription_period(stripe_sub: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Current period bounds of a Stripe subscription.

    Newer API versions moved the bounds from the subscription onto its items,
    so both places are checked.
    """
    start = stripe_value(stripe_sub, "current_period_start")
    end = stripe_value(stripe_sub, "current_period_end")
    if start is None:
        start = stripe_path(stripe_sub, "items", "data", 0, "current_period_start")
    if end is None:
        end = stripe_path(stripe_sub, "items", "data", 0, "current_period_end")
    return from_timestamp(start), from_timestamp(end)


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Subscription reference of an invoice (legacy field, then the ``parent`` block)."""
    ref = stripe_value(invoice, "subscription")
    if ref is None:
        ref = stripe_path(invoice, "parent", "subscription_details", "subscription")
    if ref is not None and not isinstance(ref, str):
        ref = stripe_value(ref, "id")
    return ref


def _ref_id(ref: Any) -> Optional[str]:
    if ref is not None and not isinstance(ref, str):
        ref = stripe_value(ref, "id")
    return ref or None


def invoice_payment_refs(invoice: Any) -> Tuple[Optional[str], Optional[str]]:
    """
    Payment intent and charge that settled an invoice.

    Current API versions list them under ``invoice.payments`` (needs
    ``expand=["data.payments"]`` on list calls); older ones put
    ``payment_intent``/``charge`` on the invoice itself.
    """
    for entry in stripe_path(invoice, "payments", "data", default=[]):
        payment = stripe_value(entry, "payment")
        payment_intent = _ref_id(stripe_value(payment, "payment_intent"))
        charge = _ref_id(stripe_value(payment, "charge"))
        if payment_intent or charge:
            return payment_intent, charge
    return _ref_id(stripe_value(invoice, "payment_intent")), _ref_id(stripe_value(invoice, "charge"))


def get_or_create_stripe_customer(user: User) -> str:
    """
    Return the user's Stripe customer ID, creating the customer on first use.

    Args:
        user: User model instance

    Returns:
        Stripe customer ID
    """
    if user.stripe_customer_id:
        return user.stripe_customer_id

    get_stripe_client()
    customer = stripe.Customer.create(
        email=user.email,
        name=user.name,
        metadata={"userId": str(user.id)},
    )

    user.stripe_customer_id = customer.id
    db.session.commit()

    current_app.logger.info(f"Created Stripe customer {customer.id} for user {user.id}")
    return customer.id
