# ledger.py
"""
Entitlement ledger: the user's current plan tier and nothing else.

No history is kept; Payment/BillingOperation rows are the only audit trail and
they are not linked to transitions here. Writes are plain overwrites, so two
concurrent writers resolve as last-write-wins.
"""
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from db import User
from errors import UserNotFound, ValidationError

log = logging.getLogger("ledger")

FREE = "free"
MONTHLY = "monthly"
YEARLY = "yearly"
FOREVER = "forever"  # unrestricted; first user and promoted admins

PLAN_TIERS = (FREE, MONTHLY, YEARLY, FOREVER)
PAID_TIERS = (MONTHLY, YEARLY)

# Display names the frontend stores in session ("Monthly Plan") -> tier
_PLAN_ALIASES = {
    "free": FREE,
    "free plan": FREE,
    "monthly": MONTHLY,
    "monthly plan": MONTHLY,
    "month": MONTHLY,
    "yearly": YEARLY,
    "yearly plan": YEARLY,
    "year": YEARLY,
    "forever": FOREVER,
}

PLAN_DISPLAY_NAMES = {
    FREE: "Free Plan",
    MONTHLY: "Monthly Plan",
    YEARLY: "Yearly Plan",
    FOREVER: "Forever",
}


def normalize_plan(name: str) -> str:
    tier = _PLAN_ALIASES.get((name or "").strip().lower())
    if not tier:
        raise ValidationError(f"Unknown plan: {name!r}")
    return tier


class EntitlementLedger:

    def get_plan(self, db: Session, user_id: int) -> str:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound(f"User {user_id} not found")
        return user.plan_tier

    def set_plan(self, db: Session, user_id: int, plan_tier: str, commit: bool = True) -> str:
        if plan_tier not in PLAN_TIERS:
            raise ValidationError(f"Unknown plan tier: {plan_tier!r}")
        updated = (
            db.query(User)
            .filter(User.id == user_id)
            .update({User.plan_tier: plan_tier, User.updated_at: datetime.utcnow()}, synchronize_session="fetch")
        )
        if not updated:
            raise UserNotFound(f"User {user_id} not found")
        if commit:
            db.commit()
        log.info("ledger: user=%s plan_tier=%s", user_id, plan_tier)
        return plan_tier
