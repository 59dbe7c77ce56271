# studio/services/users.py
"""
Admin user management: listing with subscription state, and profile/role edits.
"""
from __future__ import annotations

from typing import Any, Dict

from flask import current_app

from studio.errors import BillingValidationError, NotFoundError
from studio.extensions import db
from studio.models import ROLE_ADMIN, ROLE_USER, User
from studio.models_billing import Subscription
from studio.services.billing import billing_action

ROLES = (ROLE_USER, ROLE_ADMIN)


def _latest_subscription(user: User):
    return user.subscriptions.order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()


def _admin_user_dict(user: User) -> Dict[str, Any]:
    sub = _latest_subscription(user)
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "credits": user.credits,
        "subscriptionTier": user.subscription_tier,
        "isActive": user.is_active,
        "createdAt": user.created_at.isoformat() if user.created_at else None,
        "subscription": sub.to_dict() if sub else None,
    }


@billing_action("Failed to fetch users")
def list_users() -> Dict[str, Any]:
    users = User.query.order_by(User.email.asc()).all()
    return {"users": [_admin_user_dict(u) for u in users], "total": len(users)}


def _other_active_admins(user: User) -> int:
    return User.query.filter(
        User.role == ROLE_ADMIN,
        User.is_active.is_(True),
        User.id != user.id,
    ).count()


@billing_action("Failed to update user")
def update_user(user_id, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply admin edits to a user.

    Args:
        user_id: User primary key
        data: Any of ``name``, ``email``, ``role``, ``isActive``

    Returns:
        {"user": {id, name, email, role, isActive}}
    """
    user = db.session.get(User, int(user_id))
    if user is None:
        raise NotFoundError("User not found")

    role = data.get("role")
    if role is not None and role not in ROLES:
        raise BillingValidationError("Invalid role")

    email = data.get("email")
    if email is not None:
        email = str(email).strip().lower()
        if not email:
            raise BillingValidationError("Email cannot be empty")
        taken = User.query.filter(User.email == email, User.id != user.id).first()
        if taken is not None:
            raise BillingValidationError("Email is already in use")

    is_active = bool(data["isActive"]) if data.get("isActive") is not None else None

    # The last active admin can be neither demoted nor disabled
    losing_admin = user.is_admin and user.is_active and (
        (role is not None and role != ROLE_ADMIN) or is_active is False
    )
    if losing_admin and _other_active_admins(user) == 0:
        raise BillingValidationError("Cannot remove the last active admin")

    if data.get("name") is not None:
        user.name = str(data["name"]).strip() or None
    if email is not None:
        user.email = email
    if role is not None:
        user.role = role
    if is_active is not None:
        user.is_active = is_active
    db.session.commit()

    current_app.logger.info(f"Admin updated user {user.id}: {sorted(k for k in data if k in ('name', 'email', 'role', 'isActive'))}")
    return {
        "user": {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role,
            "isActive": user.is_active,
        }
    }
