# studio/models_billing.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, Boolean, DateTime, Numeric, Text, ForeignKey, JSON

from studio.extensions import db


ACTIVE_STATES = ("active", "trialing")


def _iso(value):
    return value.isoformat() if value else None


def _money(value):
    return float(value) if value is not None else None


# -------------------------
# SubscriptionPlan
# -------------------------
class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(Integer, primary_key=True)
    name = db.Column(String(64), unique=True, index=True, nullable=False)
    display_name = db.Column(String(120), nullable=False)
    description = db.Column(Text, nullable=True)

    # Credits granted per billing period
    credits = db.Column(Integer, nullable=False, default=0)

    # Dollars (Stripe amounts are converted at the boundary)
    price = db.Column(Numeric(10, 2), nullable=False, default=0)
    yearly_price = db.Column(Numeric(10, 2), nullable=True)

    stripe_price_id = db.Column(String(120), nullable=True, index=True)
    stripe_yearly_price_id = db.Column(String(120), nullable=True, index=True)

    features = db.Column(JSON, nullable=True)
    is_active = db.Column(Boolean, nullable=False, default=True)

    created_at = db.Column(DateTime, default=datetime.utcnow)
    updated_at = db.Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscriptions = db.relationship("Subscription", back_populates="plan", lazy="dynamic")

    def price_id_for(self, interval: str):
        """Stripe price ID for a billing interval, or None."""
        if interval == "yearly":
            return self.stripe_yearly_price_id
        if interval == "monthly":
            return self.stripe_price_id
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "displayName": self.display_name,
            "description": self.description,
            "credits": self.credits,
            "price": _money(self.price),
            "yearlyPrice": _money(self.yearly_price),
            "stripePriceId": self.stripe_price_id,
            "stripeYearlyPriceId": self.stripe_yearly_price_id,
            "features": self.features or [],
            "isActive": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<SubscriptionPlan name={self.name!r} credits={self.credits} active={self.is_active}>"


# -------------------------
# Subscription
# -------------------------
class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(Integer, primary_key=True)
    user_id = db.Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    plan_id = db.Column(Integer, ForeignKey("subscription_plans.id"), index=True, nullable=False)

    status = db.Column(String(32), index=True, nullable=False, default="active")  # active, trialing, canceled, past_due, incomplete, unpaid
    interval = db.Column(String(16), nullable=False, default="monthly")  # monthly|yearly

    current_period_start = db.Column(DateTime, nullable=True)
    current_period_end = db.Column(DateTime, nullable=True)
    cancel_at_period_end = db.Column(Boolean, nullable=False, default=False)
    canceled_at = db.Column(DateTime, nullable=True)

    stripe_subscription_id = db.Column(String(64), unique=True, nullable=True)
    stripe_price_id = db.Column(String(120), nullable=True)

    created_at = db.Column(DateTime, default=datetime.utcnow)
    updated_at = db.Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User", back_populates="subscriptions")
    plan = db.relationship("SubscriptionPlan", back_populates="subscriptions", lazy="joined")
    invoices = db.relationship("Invoice", back_populates="subscription", lazy="dynamic")

    @property
    def is_current(self) -> bool:
        return self.status in ACTIVE_STATES

    def to_dict(self, include_user: bool = False) -> dict:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "planId": self.plan_id,
            "plan": self.plan.to_dict() if self.plan else None,
            "status": self.status,
            "interval": self.interval,
            "currentPeriodStart": _iso(self.current_period_start),
            "currentPeriodEnd": _iso(self.current_period_end),
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "canceledAt": _iso(self.canceled_at),
            "stripeSubscriptionId": self.stripe_subscription_id,
            "createdAt": _iso(self.created_at),
        }
        if include_user and self.user is not None:
            data["user"] = {"id": self.user.id, "email": self.user.email, "name": self.user.name}
        return data

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user={self.user_id} status={self.status!r} stripe={self.stripe_subscription_id!r}>"


# -------------------------
# Invoice
# -------------------------
class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(Integer, primary_key=True)
    user_id = db.Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    subscription_id = db.Column(Integer, ForeignKey("subscriptions.id"), index=True, nullable=True)

    stripe_invoice_id = db.Column(String(64), unique=True, nullable=False)
    amount = db.Column(Numeric(10, 2), nullable=False, default=0)  # dollars
    currency = db.Column(String(8), nullable=False, default="usd")
    status = db.Column(String(32), index=True, nullable=False, default="draft")  # draft, paid, payment_failed
    description = db.Column(String(255), nullable=True)
    invoice_url = db.Column(String(512), nullable=True)
    due_date = db.Column(DateTime, nullable=True)
    paid_at = db.Column(DateTime, nullable=True)

    created_at = db.Column(DateTime, default=datetime.utcnow)
    updated_at = db.Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User", back_populates="invoices")
    subscription = db.relationship("Subscription", back_populates="invoices")
    payments = db.relationship("Payment", back_populates="invoice", lazy="dynamic")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripeInvoiceId": self.stripe_invoice_id,
            "subscriptionId": self.subscription_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status,
            "description": self.description,
            "invoiceUrl": self.invoice_url,
            "dueDate": _iso(self.due_date),
            "paidAt": _iso(self.paid_at),
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Invoice {self.stripe_invoice_id!r} amount={self.amount} status={self.status!r}>"


# -------------------------
# Payment
# -------------------------
class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(Integer, primary_key=True)
    user_id = db.Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    invoice_id = db.Column(Integer, ForeignKey("invoices.id"), index=True, nullable=True)

    stripe_payment_intent_id = db.Column(String(64), unique=True, nullable=True)
    amount = db.Column(Numeric(10, 2), nullable=False, default=0)  # dollars
    currency = db.Column(String(8), nullable=False, default="usd")
    status = db.Column(String(32), index=True, nullable=False)  # succeeded, failed, requires_action, ...
    payment_method = db.Column(String(64), nullable=True)
    description = db.Column(String(255), nullable=True)
    refunded = db.Column(Boolean, nullable=False, default=False)
    refunded_amount = db.Column(Numeric(10, 2), nullable=True)

    created_at = db.Column(DateTime, default=datetime.utcnow)
    updated_at = db.Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship("User", back_populates="payments")
    invoice = db.relationship("Invoice", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stripePaymentIntentId": self.stripe_payment_intent_id,
            "invoiceId": self.invoice_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status,
            "paymentMethod": self.payment_method,
            "description": self.description,
            "refunded": self.refunded,
            "refundedAmount": _money(self.refunded_amount),
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Payment {self.stripe_payment_intent_id!r} amount={self.amount} status={self.status!r}>"


# -------------------------
# StripeEvent (processed webhook ledger)
# -------------------------
class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(Integer, primary_key=True)
    stripe_event_id = db.Column(String(255), unique=True, nullable=False)
    event_type = db.Column(String(64), index=True, nullable=False)
    outcome = db.Column(String(32), nullable=False)  # handled, skipped, ignored, unrecognized
    processed_at = db.Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<StripeEvent {self.stripe_event_id!r} type={self.event_type!r} outcome={self.outcome!r}>"
