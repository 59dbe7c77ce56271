# studio/auth/__init__.py
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from studio.auth.session import login_required
from studio.extensions import limiter
from studio.models import User

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api/auth")


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"ok": False, "error": "Email and password are required"}), 400

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        current_app.logger.info(f"Failed login for {email}")
        return jsonify({"ok": False, "error": "Invalid email or password"}), 401

    if not user.is_active:
        current_app.logger.info(f"Login refused for disabled user {user.id}")
        return jsonify({"ok": False, "error": "Account is disabled"}), 403

    login_user(user)
    current_app.logger.info(f"User {user.id} logged in")
    return jsonify({"ok": True, "user": user.to_dict()})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"ok": True, "user": current_user.to_dict()})


@auth_bp.route("/csrf", methods=["GET"])
def csrf_token():
    return jsonify({"csrfToken": generate_csrf()})
