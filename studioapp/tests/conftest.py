import hashlib
import hmac
import json
import time
import uuid

import pytest

from studio import create_app, db as _db
from studio.config import TestingConfig
from studio.models import User, ROLE_ADMIN, ROLE_USER
from studio.models_billing import SubscriptionPlan, Subscription
from studio.services.plans import seed_subscription_plans

PASSWORD = "CorrectHorse!1234"


class FakeStripeObject(dict):
    """dict with attribute access, like stripe.StripeObject."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name)


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        _db.create_all()
        seed_subscription_plans()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def plan(app):
    def _plan(name):
        return SubscriptionPlan.query.filter_by(name=name).one()
    return _plan


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(email=None, credits=0, role=ROLE_USER, **fields):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.com",
            name=f"User {counter['n']}",
            credits=credits,
            role=role,
            **fields,
        )
        user.set_password(PASSWORD)
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role=ROLE_ADMIN)


@pytest.fixture
def login(client):
    def _login(user, password=PASSWORD):
        r = client.post("/api/auth/login", json={"email": user.email, "password": password})
        assert r.status_code == 200, r.get_json()
        return r
    return _login


@pytest.fixture
def make_subscription(app):
    def _make(user, plan, stripe_id="sub_local_1", status="active", interval="monthly", **fields):
        sub = Subscription(
            user_id=user.id,
            plan_id=plan.id,
            stripe_subscription_id=stripe_id,
            status=status,
            interval=interval,
            **fields,
        )
        _db.session.add(sub)
        user.stripe_subscription_id = stripe_id
        user.subscription_tier = plan.name
        _db.session.commit()
        return sub
    return _make


def stripe_subscription(sub_id="sub_123", price_id=None, status="active", metadata=None,
                        start=1_700_000_000, end=1_702_592_000, item_id="si_123"):
    """Shape of a Stripe Subscription as delivered in events / returned by retrieve."""
    return FakeStripeObject({
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_123",
        "metadata": metadata or {},
        "cancel_at_period_end": False,
        "current_period_start": start,
        "current_period_end": end,
        "items": {"object": "list", "data": [{"id": item_id, "price": {"id": price_id}}]},
    })


@pytest.fixture
def stripe_sub():
    return stripe_subscription


def sign_payload(payload, secret, timestamp=None):
    ts = int(timestamp if timestamp is not None else time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture
def post_event(app, client):
    """POST a correctly signed Stripe event to the webhook endpoint."""
    def _post(event_type, obj, event_id=None, secret=None, signature=None):
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": obj},
        }
        payload = json.dumps(event)
        header = signature or sign_payload(payload, secret or app.config["STRIPE_WEBHOOK_SECRET"])
        return client.post(
            "/api/webhooks/stripe",
            data=payload,
            headers={"Stripe-Signature": header},
            content_type="application/json",
        )
    return _post
