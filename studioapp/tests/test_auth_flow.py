from flask import g
from flask_login import login_user

from studio.auth.session import load_current_user, session_user_id

from conftest import PASSWORD


def test_login_requires_email_and_password(app, client):
    r = client.post("/api/auth/login", json={"email": "u@example.com"})
    assert r.status_code == 400
    assert r.get_json()["ok"] is False


def test_login_rejects_bad_password(app, client, make_user):
    user = make_user(email="u2@example.com")
    r = client.post("/api/auth/login", json={"email": user.email, "password": "not-the-password"})
    assert r.status_code == 401
    assert r.get_json()["error"] == "Invalid email or password"


def test_login_is_case_insensitive_on_email(app, client, make_user):
    make_user(email="mixed@example.com")
    r = client.post("/api/auth/login", json={"email": "  Mixed@Example.com ", "password": PASSWORD})
    assert r.status_code == 200
    assert r.get_json()["user"]["email"] == "mixed@example.com"


def test_me_and_logout(app, client, login, make_user):
    user = make_user(credits=77)
    login(user)

    r = client.get("/api/auth/me")
    assert r.status_code == 200
    body = r.get_json()["user"]
    assert body["id"] == user.id
    assert body["credits"] == 77
    assert body["subscriptionTier"] == "Free"

    assert client.post("/api/auth/logout").get_json() == {"ok": True}
    assert client.get("/api/auth/me").status_code == 401


def test_csrf_token_endpoint(app, client):
    r = client.get("/api/auth/csrf")
    assert r.status_code == 200
    assert r.get_json()["csrfToken"]


def test_webhook_is_exempt_from_csrf(app, client, post_event):
    app.config["WTF_CSRF_ENABLED"] = True
    r = post_event("customer.created", {"id": "cus_1", "object": "customer"})
    assert r.status_code == 200


def test_request_user_is_loaded_into_g(app, make_user):
    user = make_user()
    with app.test_request_context("/api/user/credits"):
        load_current_user()
        assert g.user is None
        assert session_user_id() is None

        login_user(user)
        load_current_user()
        assert g.user is user
        assert session_user_id() == user.id


def test_billing_routes_use_request_user(app, client, login, make_user):
    user = make_user(credits=12)
    login(user)
    r = client.get("/api/user/credits")
    assert r.status_code == 200
    assert r.get_json() == {"credits": 12}


def test_disabled_user_cannot_log_in(app, client, make_user):
    user = make_user(email="off@example.com", is_active=False)
    r = client.post("/api/auth/login", json={"email": user.email, "password": PASSWORD})
    assert r.status_code == 403
    assert r.get_json()["error"] == "Account is disabled"
    assert client.get("/api/auth/me").status_code == 401
