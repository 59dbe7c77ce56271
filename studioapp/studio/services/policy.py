# studio/services/policy.py
"""
Billing policy decisions kept in one place.

Both rules below are heuristics awaiting product-owner sign-off; callers
must go through these functions rather than re-deriving them inline.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from studio.models_billing import SubscriptionPlan


def is_plan_upgrade(old_plan: Optional[SubscriptionPlan], new_plan: Optional[SubscriptionPlan]) -> bool:
    """A plan change counts as an upgrade when the new monthly price is higher."""
    if old_plan is None or new_plan is None or old_plan.id == new_plan.id:
        return False
    return Decimal(new_plan.price or 0) > Decimal(old_plan.price or 0)


def upgrade_credit_delta(old_plan: SubscriptionPlan, new_plan: SubscriptionPlan) -> int:
    """Credits granted on upgrade: the difference in plan grants, never negative."""
    if not is_plan_upgrade(old_plan, new_plan):
        return 0
    return max((new_plan.credits or 0) - (old_plan.credits or 0), 0)


def reconcile_revenue(payment_total: Decimal, invoice_total: Decimal) -> Decimal:
    """Total revenue is the larger of the two ledgers, not their sum."""
    return max(Decimal(payment_total or 0), Decimal(invoice_total or 0))
