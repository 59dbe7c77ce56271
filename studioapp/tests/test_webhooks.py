import time
from decimal import Decimal

import pytest
import stripe
from sqlalchemy import text

from studio.extensions import db
from studio.models import User
from studio.models_billing import Invoice, StripeEvent, Subscription
from studio.services import stripe_webhooks
from studio.services.stripe_webhooks import (
    EventKind,
    USER_RESOLVERS,
    WEBHOOK_HANDLERS,
    check_handler_coverage,
    resolve_subscription_user,
)

from conftest import sign_payload


def _checkout_session(user, plan, sub_id="sub_123", mode="subscription", interval="monthly"):
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": mode,
        "subscription": sub_id,
        "customer": "cus_123",
        "metadata": {"userId": str(user.id), "planId": str(plan.id), "interval": interval},
    }


def _fake_retrieve(monkeypatch, stripe_sub, price_id, **kwargs):
    calls = []

    def fake(sub_id, *a, **kw):
        calls.append(sub_id)
        return stripe_sub(sub_id=sub_id, price_id=price_id, **kwargs)

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake)
    return calls


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------

def test_invalid_signature_is_rejected_without_writes(app, post_event, make_user, plan):
    user = make_user()
    r = post_event(
        "checkout.session.completed",
        _checkout_session(user, plan("Lite")),
        signature=f"t={int(time.time())},v1=deadbeef",
    )
    assert r.status_code == 400
    assert "Webhook Error" in r.get_json()["error"]
    assert Subscription.query.count() == 0
    assert StripeEvent.query.count() == 0
    assert db.session.get(User, user.id).credits == 0


def test_signature_with_wrong_secret_is_rejected(app, post_event, make_user, plan):
    user = make_user()
    r = post_event("checkout.session.completed", _checkout_session(user, plan("Lite")), secret="whsec_other")
    assert r.status_code == 400
    assert StripeEvent.query.count() == 0


def test_stale_signature_is_rejected(app, client):
    payload = '{"id": "evt_old", "type": "invoice.paid", "data": {"object": {}}}'
    header = sign_payload(payload, app.config["STRIPE_WEBHOOK_SECRET"], timestamp=time.time() - 3600)
    r = client.post("/api/webhooks/stripe", data=payload, headers={"Stripe-Signature": header})
    assert r.status_code == 400


def test_missing_signature_header_is_rejected(app, client):
    r = client.post("/api/webhooks/stripe", data='{"id": "evt_1", "type": "invoice.paid"}')
    assert r.status_code == 400


def test_missing_webhook_secret_fails_closed(app, post_event):
    app.config["STRIPE_WEBHOOK_SECRET"] = ""
    r = post_event("invoice.paid", {"id": "in_1"}, secret="whsec_test_secret")
    assert r.status_code == 400
    assert StripeEvent.query.count() == 0


# ---------------------------------------------------------------------------
# checkout.session.completed
# ---------------------------------------------------------------------------

def test_checkout_completed_creates_subscription_and_grants_credits(app, post_event, make_user, plan, stripe_sub, monkeypatch):
    lite = plan("Lite")
    user = make_user(credits=0)
    calls = _fake_retrieve(monkeypatch, stripe_sub, lite.stripe_price_id)

    r = post_event("checkout.session.completed", _checkout_session(user, lite))

    assert r.status_code == 200
    assert r.get_json()["outcome"] == "handled"
    assert calls == ["sub_123"]

    subs = Subscription.query.filter_by(user_id=user.id).all()
    assert len(subs) == 1
    assert subs[0].status == "active"
    assert subs[0].interval == "monthly"
    assert subs[0].plan_id == lite.id
    assert subs[0].current_period_end is not None

    user = db.session.get(User, user.id)
    assert user.credits == lite.credits
    assert user.subscription_tier == "Lite"
    assert user.stripe_subscription_id == "sub_123"


def test_checkout_interval_comes_from_stripe_price(app, post_event, make_user, plan, stripe_sub, monkeypatch):
    pro = plan("Pro")
    user = make_user()
    _fake_retrieve(monkeypatch, stripe_sub, pro.stripe_yearly_price_id)

    # client claimed monthly; the subscription actually carries the yearly price
    post_event("checkout.session.completed", _checkout_session(user, pro, interval="monthly"))

    assert Subscription.query.filter_by(user_id=user.id).one().interval == "yearly"


def test_checkout_credits_are_additive(app, post_event, make_user, plan, stripe_sub, monkeypatch):
    lite = plan("Lite")
    user = make_user(credits=250)
    _fake_retrieve(monkeypatch, stripe_sub, lite.stripe_price_id)

    post_event("checkout.session.completed", _checkout_session(user, lite))

    assert db.session.get(User, user.id).credits == 250 + lite.credits


def test_redelivered_checkout_event_grants_credits_once(app, post_event, make_user, plan, stripe_sub, monkeypatch):
    lite = plan("Lite")
    user = make_user(credits=0)
    calls = _fake_retrieve(monkeypatch, stripe_sub, lite.stripe_price_id)
    session = _checkout_session(user, lite)

    first = post_event("checkout.session.completed", session, event_id="evt_checkout_1")
    second = post_event("checkout.session.completed", session, event_id="evt_checkout_1")

    assert first.status_code == 200 and second.status_code == 200
    assert second.get_json()["outcome"] == "duplicate"
    assert len(calls) == 1
    assert db.session.get(User, user.id).credits == lite.credits
    assert Subscription.query.filter_by(user_id=user.id).count() == 1
    assert StripeEvent.query.filter_by(stripe_event_id="evt_checkout_1").count() == 1


def test_checkout_without_user_metadata_is_400(app, post_event, make_user, plan):
    session = _checkout_session(make_user(), plan("Lite"))
    session["metadata"] = {"planId": "1"}
    r = post_event("checkout.session.completed", session)
    assert r.status_code == 400
    assert r.get_json()["error"] == "User ID is required"
    assert Subscription.query.count() == 0
    assert StripeEvent.query.count() == 0


def test_checkout_for_unknown_user_is_skipped(app, post_event, plan):
    lite = plan("Lite")
    session = {
        "id": "cs_x", "mode": "subscription", "subscription": "sub_9",
        "metadata": {"userId": "9999", "planId": str(lite.id)},
    }
    r = post_event("checkout.session.completed", session)
    assert r.status_code == 200
    assert r.get_json()["outcome"] == "skipped"
    assert Subscription.query.count() == 0


def test_payment_mode_checkout_is_ignored(app, post_event, make_user, plan):
    user = make_user()
    r = post_event("checkout.session.completed", _checkout_session(user, plan("Lite"), mode="payment"))
    assert r.get_json()["outcome"] == "ignored"
    assert db.session.get(User, user.id).credits == 0


def test_processing_failure_rolls_back_and_allows_retry(app, post_event, make_user, plan, stripe_sub, monkeypatch):
    lite = plan("Lite")
    user = make_user(credits=0)

    def broken(*a, **kw):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Subscription, "retrieve", broken)
    session = _checkout_session(user, lite)

    r = post_event("checkout.session.completed", session, event_id="evt_retry")
    assert r.status_code == 500
    assert Subscription.query.count() == 0
    assert StripeEvent.query.count() == 0
    assert db.session.get(User, user.id).credits == 0

    _fake_retrieve(monkeypatch, stripe_sub, lite.stripe_price_id)
    r = post_event("checkout.session.completed", session, event_id="evt_retry")
    assert r.status_code == 200
    assert r.get_json()["outcome"] == "handled"
    assert db.session.get(User, user.id).credits == lite.credits


# ---------------------------------------------------------------------------
# customer.subscription.updated / deleted
# ---------------------------------------------------------------------------

def test_upgrade_credits_the_difference(app, post_event, make_user, make_subscription, plan, stripe_sub):
    lite, pro = plan("Lite"), plan("Pro")
    user = make_user(credits=100)
    make_subscription(user, lite, stripe_id="sub_up")

    r = post_event(
        "customer.subscription.updated",
        stripe_sub(sub_id="sub_up", price_id=pro.stripe_price_id, metadata={"userId": str(user.id)}),
    )

    assert r.status_code == 200
    user = db.session.get(User, user.id)
    assert user.credits == 100 + (pro.credits - lite.credits)
    assert user.subscription_tier == "Pro"
    assert Subscription.query.filter_by(stripe_subscription_id="sub_up").one().plan_id == pro.id


def test_downgrade_changes_plan_without_credits(app, post_event, make_user, make_subscription, plan, stripe_sub):
    lite, pro = plan("Lite"), plan("Pro")
    user = make_user(credits=500)
    make_subscription(user, pro, stripe_id="sub_down")

    post_event("customer.subscription.updated", stripe_sub(sub_id="sub_down", price_id=lite.stripe_price_id))

    user = db.session.get(User, user.id)
    assert user.credits == 500
    assert user.subscription_tier == "Lite"


def test_update_reads_plan_stored_by_concurrent_change(app, make_user, make_subscription, plan, stripe_sub):
    lite, pro = plan("Lite"), plan("Pro")
    user = make_user(credits=0)
    sub = make_subscription(user, lite, stripe_id="sub_race")
    assert sub.plan.name == "Lite"
    # an API plan change committed while this delivery waited on the row lock
    db.session.execute(
        text("UPDATE subscriptions SET plan_id = :plan WHERE id = :id"),
        {"plan": pro.id, "id": sub.id},
    )

    outcome, _ = stripe_webhooks.handle_subscription_updated(
        stripe_sub(sub_id="sub_race", price_id=pro.stripe_price_id, metadata={"userId": str(user.id)})
    )

    assert outcome == "handled"
    assert sub.plan.name == "Pro"
    assert db.session.get(User, user.id).credits == 0
    db.session.rollback()


def test_status_update_mirrors_provider(app, post_event, make_user, make_subscription, plan, stripe_sub):
    lite = plan("Lite")
    user = make_user()
    make_subscription(user, lite, stripe_id="sub_pd")

    post_event("customer.subscription.updated", stripe_sub(sub_id="sub_pd", price_id=lite.stripe_price_id, status="past_due"))

    sub = Subscription.query.filter_by(stripe_subscription_id="sub_pd").one()
    assert sub.status == "past_due"
    assert db.session.get(User, user.id).credits == 0


def test_update_for_missing_local_row_creates_it_without_credits(app, post_event, make_user, plan, stripe_sub):
    pro = plan("Pro")
    user = make_user(credits=10)

    post_event(
        "customer.subscription.updated",
        stripe_sub(sub_id="sub_new", price_id=pro.stripe_yearly_price_id, metadata={"userId": str(user.id)}),
    )

    sub = Subscription.query.filter_by(stripe_subscription_id="sub_new").one()
    assert sub.plan_id == pro.id
    assert sub.interval == "yearly"
    assert db.session.get(User, user.id).credits == 10


def test_deleted_without_resolvable_user_is_acknowledged(app, post_event, make_user, plan, stripe_sub):
    bystander = make_user(credits=42, subscription_tier="Lite", stripe_subscription_id="sub_other")

    r = post_event("customer.subscription.deleted", stripe_sub(sub_id="sub_gone", price_id=plan("Lite").stripe_price_id))

    assert r.status_code == 200
    assert r.get_json()["outcome"] == "skipped"
    bystander = db.session.get(User, bystander.id)
    assert bystander.credits == 42
    assert bystander.subscription_tier == "Lite"
    assert bystander.stripe_subscription_id == "sub_other"
    assert Subscription.query.count() == 0


def test_deleted_reverts_tier_and_keeps_credits(app, post_event, make_user, make_subscription, plan, stripe_sub):
    lite = plan("Lite")
    user = make_user(credits=5000)
    make_subscription(user, lite, stripe_id="sub_del")
    # only the subscriptions table knows the owner
    user.stripe_subscription_id = None
    db.session.commit()

    r = post_event("customer.subscription.deleted", stripe_sub(sub_id="sub_del", price_id=lite.stripe_price_id, status="canceled"))

    assert r.get_json()["outcome"] == "handled"
    user = db.session.get(User, user.id)
    assert user.credits == 5000
    assert user.subscription_tier == "Free"
    assert user.stripe_subscription_id is None
    sub = Subscription.query.filter_by(stripe_subscription_id="sub_del").one()
    assert sub.status == "canceled"
    assert sub.canceled_at is not None


def test_deleting_superseded_subscription_keeps_current_one(app, post_event, make_user, make_subscription, plan, stripe_sub):
    lite, pro = plan("Lite"), plan("Pro")
    user = make_user(credits=300)
    make_subscription(user, lite, stripe_id="sub_old")
    make_subscription(user, pro, stripe_id="sub_new")

    r = post_event(
        "customer.subscription.deleted",
        stripe_sub(sub_id="sub_old", price_id=lite.stripe_price_id, status="canceled", metadata={"userId": str(user.id)}),
    )

    assert r.get_json()["outcome"] == "handled"
    user = db.session.get(User, user.id)
    assert user.subscription_tier == "Pro"
    assert user.stripe_subscription_id == "sub_new"
    assert user.credits == 300
    assert Subscription.query.filter_by(stripe_subscription_id="sub_old").one().status == "canceled"
    assert Subscription.query.filter_by(stripe_subscription_id="sub_new").one().status == "active"


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def _invoice(**overrides):
    data = {
        "id": "in_123",
        "object": "invoice",
        "customer": "cus_123",
        "customer_email": "payer@example.com",
        "subscription": "sub_inv",
        "amount_due": 2999,
        "currency": "usd",
        "number": "A-0001",
        "hosted_invoice_url": "https://invoice.stripe.test/in_123",
    }
    data.update(overrides)
    return data


def test_invoice_created_stores_dollars(app, post_event, make_user, make_subscription, plan):
    user = make_user(email="payer@example.com", stripe_customer_id="cus_123")
    sub = make_subscription(user, plan("Lite"), stripe_id="sub_inv")

    r = post_event("invoice.created", _invoice())

    assert r.get_json()["outcome"] == "handled"
    invoice = Invoice.query.filter_by(stripe_invoice_id="in_123").one()
    assert invoice.amount == Decimal("29.99")
    assert invoice.status == "draft"
    assert invoice.subscription_id == sub.id
    assert invoice.user_id == user.id


def test_invoice_created_with_parent_reference_and_email_lookup(app, post_event, make_user):
    user = make_user(email="payer@example.com")
    inv = _invoice(customer="cus_unknown", subscription=None, amount_due=1000,
                   parent={"subscription_details": {"subscription": "sub_inv"}})

    post_event("invoice.created", inv)

    invoice = Invoice.query.filter_by(stripe_invoice_id="in_123").one()
    assert invoice.user_id == user.id
    assert invoice.amount == Decimal("10.00")


def test_invoice_created_without_subscription_is_skipped(app, post_event, make_user):
    make_user(email="payer@example.com", stripe_customer_id="cus_123")
    r = post_event("invoice.created", _invoice(subscription=None))
    assert r.get_json()["outcome"] == "skipped"
    assert Invoice.query.count() == 0


@pytest.mark.parametrize("event_type,status", [
    ("invoice.paid", "paid"),
    ("invoice.payment_succeeded", "paid"),
    ("invoice.payment_failed", "payment_failed"),
])
def test_invoice_status_transitions(app, post_event, make_user, event_type, status):
    make_user(email="payer@example.com", stripe_customer_id="cus_123")
    post_event("invoice.created", _invoice())

    r = post_event(event_type, _invoice(status_transitions={"paid_at": 1_700_000_500}))

    assert r.get_json()["outcome"] == "handled"
    assert Invoice.query.filter_by(stripe_invoice_id="in_123").one().status == status


def test_paid_event_for_unknown_invoice_is_skipped(app, post_event):
    r = post_event("invoice.paid", _invoice(id="in_missing"))
    assert r.status_code == 200
    assert r.get_json()["outcome"] == "skipped"
    assert Invoice.query.count() == 0


# ---------------------------------------------------------------------------
# Dispatch table
# ---------------------------------------------------------------------------

def test_ignored_event_is_acknowledged(app, post_event):
    r = post_event("charge.succeeded", {"id": "ch_1", "object": "charge"})
    assert r.status_code == 200
    assert r.get_json()["outcome"] == "ignored"


def test_unrecognized_event_is_acknowledged(app, post_event):
    r = post_event("customer.tax_id.created", {"id": "txi_1"})
    assert r.status_code == 200
    assert r.get_json()["outcome"] == "unrecognized"


def test_every_event_kind_has_a_handler():
    assert set(WEBHOOK_HANDLERS) == set(EventKind)


def test_coverage_check_reports_missing_kinds():
    partial = dict(WEBHOOK_HANDLERS)
    partial.pop(EventKind.INVOICE_PAID)
    with pytest.raises(RuntimeError, match="invoice.paid"):
        check_handler_coverage(partial)


# ---------------------------------------------------------------------------
# User resolution
# ---------------------------------------------------------------------------

def test_resolvers_prefer_metadata(app, make_user, stripe_sub):
    by_metadata = make_user()
    by_column = make_user(stripe_subscription_id="sub_res")

    user = resolve_subscription_user(stripe_sub(sub_id="sub_res", metadata={"userId": str(by_metadata.id)}))
    assert user.id == by_metadata.id

    user = resolve_subscription_user(stripe_sub(sub_id="sub_res"))
    assert user.id == by_column.id


def test_resolvers_fall_back_to_subscription_table(app, make_user, make_subscription, plan, stripe_sub):
    owner = make_user()
    make_subscription(owner, plan("Lite"), stripe_id="sub_table")
    owner.stripe_subscription_id = None
    db.session.commit()

    names = [name for name, _ in USER_RESOLVERS]
    assert names == ["metadata", "user.stripe_subscription_id", "subscriptions table"]
    assert resolve_subscription_user(stripe_sub(sub_id="sub_table")).id == owner.id
    assert stripe_webhooks.user_from_user_subscription_id(stripe_sub(sub_id="sub_table")) is None
