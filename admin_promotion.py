# admin_promotion.py
"""
Admin roster and first-user bootstrap.

Admins are rows in `admins` keyed by email. The first user to sign up becomes
the "main" admin and cannot be demoted; everyone promoted later gets type "no".
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from db import Admin, Subscription, User
from errors import AdminNotFound, DuplicateUser, ProtectedResource, UserNotFound
from ledger import EntitlementLedger, FOREVER, FREE

log = logging.getLogger("admin")

MAIN = "main"
REGULAR = "no"


def _user_dict(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "plan_tier": u.plan_tier,
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat() if u.created_at else None,
    }


def _admin_dict(a: Admin) -> Dict[str, Any]:
    return {
        "id": a.id,
        "email": a.email,
        "name": a.name,
        "type": a.type,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


class AdminPromotionService:

    def __init__(self, ledger: Optional[EntitlementLedger] = None):
        self.ledger = ledger or EntitlementLedger()

    def estimated_user_count(self, db: Session) -> int:
        return int(db.query(func.count(User.id)).scalar() or 0)

    def signup(self, db: Session, email: str, name: str, hashed_password: str):
        """
        Create a free user; the first one becomes the main admin.

        The count is read before the insert and nothing serializes the two, so
        two concurrent signups on an empty table can both end up main admins.
        """
        email = email.strip().lower()
        if db.query(User).filter(User.email == email).first():
            raise DuplicateUser("User with this email already exists")

        observed = self.estimated_user_count(db)
        user = User(email=email, name=name, hashed_password=hashed_password, plan_tier=FREE)
        db.add(user)
        db.flush()
        is_first = self.bootstrap_first_user(db, user, observed)
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(user)
        log.info("signup: user=%s email=%s first=%s", user.id, user.email, is_first)
        return user, is_first

    def bootstrap_first_user(self, db: Session, user: User, observed_count: int) -> bool:
        if observed_count != 0:
            return False
        self.ledger.set_plan(db, user.id, FOREVER, commit=False)
        db.add(Admin(email=user.email, name=user.name, type=MAIN))
        log.warning("bootstrap: %s is the first user, granted main admin", user.email)
        return True

    def promote(self, db: Session, email: str) -> Admin:
        email = (email or "").strip().lower()
        user = db.query(User).filter(User.email == email).first()
        if not user:
            raise UserNotFound(f"No user with email {email}")
        admin = db.query(Admin).filter(Admin.email == email).first()
        if admin:
            return admin

        admin = Admin(email=user.email, name=user.name, type=REGULAR)
        db.add(admin)
        # paying subscribers keep their plan; everyone else gets the unrestricted tier
        has_paid_sub = (
            db.query(Subscription)
            .filter(Subscription.user_id == user.id, Subscription.active.is_(True))
            .first()
        )
        if not has_paid_sub:
            self.ledger.set_plan(db, user.id, FOREVER, commit=False)
        db.commit()
        db.refresh(admin)
        log.info("promote: %s", email)
        return admin

    def demote(self, db: Session, email: str) -> None:
        email = (email or "").strip().lower()
        admin = db.query(Admin).filter(Admin.email == email).first()
        if not admin:
            raise AdminNotFound(f"{email} is not an admin")
        if admin.type != REGULAR:
            log.warning("demote refused for main admin %s", email)
            raise ProtectedResource("The main admin cannot be removed")

        db.delete(admin)
        user = db.query(User).filter(User.email == email).first()
        if user and user.plan_tier == FOREVER:
            self.ledger.set_plan(db, user.id, FREE, commit=False)
        db.commit()
        log.info("demote: %s", email)

    def list_admins(self, db: Session) -> Dict[str, Any]:
        admins = db.query(Admin).order_by(Admin.created_at.asc(), Admin.id.asc()).all()
        admin_emails = {a.email for a in admins}
        users = db.query(User).order_by(User.created_at.desc(), User.id.desc()).all()
        return {
            "admins": [_admin_dict(a) for a in admins],
            "users": [_user_dict(u) for u in users if u.email not in admin_emails],
        }

    def delete_user(self, db: Session, user_id: int) -> None:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound(f"User {user_id} not found")
        if db.query(Admin).filter(Admin.email == user.email).first():
            raise ProtectedResource("Admins cannot be deleted; demote first")
        email = user.email
        db.delete(user)
        db.commit()
        log.info("deleted user %s (%s)", user_id, email)
