# studio/models.py
from __future__ import annotations

from datetime import datetime

from flask_login import UserMixin
from sqlalchemy import Boolean, Integer, String, DateTime
from werkzeug.security import generate_password_hash, check_password_hash

from studio.extensions import db


ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"


# -------------------------
# User
# -------------------------
class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(Integer, primary_key=True)

    name = db.Column(String(120), nullable=True)
    email = db.Column(String(255), unique=True, index=True, nullable=False)
    password_hash = db.Column(String(255), nullable=True)

    # Roles: USER|ADMIN
    role = db.Column(String(16), nullable=False, default=ROLE_USER, index=True)

    # Disabled accounts cannot log in; overrides UserMixin.is_active
    is_active = db.Column(Boolean, nullable=False, default=True)

    # Spendable balance for generation requests
    credits = db.Column(Integer, nullable=False, default=0)

    # Cached plan name; the Subscription table is the source of truth
    subscription_tier = db.Column(String(64), nullable=False, default="Free")

    stripe_customer_id = db.Column(String(64), unique=True, index=True, nullable=True)
    stripe_subscription_id = db.Column(String(64), index=True, nullable=True)

    created_at = db.Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    subscriptions = db.relationship("Subscription", back_populates="user", lazy="dynamic")
    invoices = db.relationship("Invoice", back_populates="user", lazy="dynamic")
    payments = db.relationship("Payment", back_populates="user", lazy="dynamic")

    # ---- Auth helpers ----
    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    # ---- Convenience ----
    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "credits": self.credits,
            "subscriptionTier": self.subscription_tier,
            "isActive": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role!r} credits={self.credits}>"
