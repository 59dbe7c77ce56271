# studio/auth/session.py
from __future__ import annotations

from functools import wraps
from typing import Callable

from flask import g, jsonify
from flask_login import current_user

from studio.errors import AuthorizationError


# ---------------------- Core helpers ----------------------

def load_current_user() -> None:
    """Populate g.user from the Flask-Login session."""
    g.user = current_user._get_current_object() if current_user.is_authenticated else None


def session_user_id():
    """ID of the user loaded for this request, or None."""
    user = g.get("user")
    return user.id if user is not None else None


# ---------------------- Public API ------------------------

def login_required(view: Callable) -> Callable:
    """Require a logged-in session; answers JSON 401 otherwise."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"ok": False, "error": "auth_required"}), 401
        return view(*args, **kwargs)
    return wrapped


def require_admin(view: Callable) -> Callable:
    """Minimal RBAC gate for admin-only views (401 anonymous, 403 non-admin)."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"ok": False, "error": "auth_required"}), 401
        if not getattr(current_user, "is_admin", False):
            raise AuthorizationError("forbidden")
        return view(*args, **kwargs)
    return wrapped
