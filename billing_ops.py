# billing_ops.py
"""
Back-office billing: manual entries, refunds, invoices and the admin dashboard.

Nothing in here touches User.plan_tier. A manual charge or an approved refund is
bookkeeping only; entitlements move through reconciliation and admin promotion.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, field_validator
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from db import Admin, BillingOperation, Course, Payment, Refund, Subscription, User, row_to_dict, session_factory
from errors import BulkActionFailed, PaymentNotFound, RefundNotFound, UserNotFound, ValidationError
from ledger import PLAN_TIERS

log = logging.getLogger("billing")

REFUND_STATUSES = ("pending", "approved", "rejected", "processed")
OPERATION_TYPES = ("manual", "recurring", "adjustment")

PERIOD_DAYS = {"week": 7, "month": 30, "quarter": 90, "year": 365}


class BulkRefundAction(BaseModel):
    refund_ids: List[int]
    action: Literal["approve", "reject"]
    notes: Optional[str] = None

    @field_validator("refund_ids")
    @classmethod
    def ids_not_empty(cls, v: List[int]) -> List[int]:
        if not v:
            raise ValueError("refund_ids cannot be empty")
        return v


def _since(period: Optional[str], now: datetime) -> Optional[datetime]:
    if not period or period == "all":
        return None
    days = PERIOD_DAYS.get(period)
    if days is None:
        raise ValidationError(f"Unknown period: {period!r}")
    return now - timedelta(days=days)


class BillingOperationsService:

    def __init__(self, website_url: str = config.WEBSITE_URL,
                 sessions: Callable[[], Session] = session_factory):
        self.website_url = website_url.rstrip("/")
        self.sessions = sessions

    # ---- manual billing ---------------------------------------------------------

    def record_manual_billing(self, db: Session, user_email: str, amount: float, currency: str,
                              description: str, method: str = "manual", op_type: str = "manual",
                              processed_by: Optional[str] = None) -> BillingOperation:
        missing = [name for name, val in (("userEmail", user_email), ("amount", amount),
                                          ("description", description)) if val in (None, "")]
        if missing:
            raise ValidationError(fields=missing)
        if op_type not in OPERATION_TYPES:
            raise ValidationError(f"Unknown billing operation type: {op_type!r}")
        user = db.query(User).filter(User.email == user_email.strip().lower()).first()
        if not user:
            raise UserNotFound(f"No user with email {user_email}")

        op = BillingOperation(
            user_id=user.id,
            user_email=user.email,
            amount=float(amount),
            currency=(currency or config.DEFAULT_CURRENCY).upper(),
            type=op_type,
            status="pending",
            description=description,
            payment_method=method or "manual",
            processed_by=processed_by,
        )
        db.add(op)
        db.flush()
        # no external call to wait on
        op.status = "completed"
        db.commit()
        db.refresh(op)
        log.info("manual billing: op=%s user=%s amount=%s %s by=%s",
                 op.id, user.email, op.amount, op.currency, processed_by)
        return op

    # ---- refunds ----------------------------------------------------------------

    def create_refund(self, db: Session, user_id: int, payment_id: int, amount: float, reason: str) -> Refund:
        if not reason:
            raise ValidationError(fields=["reason"])
        payment = db.query(Payment).filter(Payment.id == payment_id).first()
        if not payment or payment.user_id != user_id:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        if payment.status != "success":
            raise ValidationError("Only successful payments can be refunded")
        if amount is None or amount <= 0 or amount > payment.amount:
            raise ValidationError(f"Refund amount must be between 0 and {payment.amount}")

        refund = Refund(
            user_id=payment.user_id,
            user_email=payment.user_email,
            payment_id=payment.id,
            amount=float(amount),
            currency=payment.currency,
            reason=reason,
            status="pending",
            original_transaction_id=payment.transaction_id,
            original_amount=payment.amount,
            original_gateway=payment.gateway,
        )
        db.add(refund)
        db.commit()
        db.refresh(refund)
        log.info("refund requested: refund=%s payment=%s amount=%s", refund.id, payment.id, amount)
        return refund

    def process_refund(self, db: Session, refund_id: int, decision: str, processed_by: str,
                       amount: Optional[float] = None, reason: Optional[str] = None,
                       notes: Optional[str] = None) -> Refund:
        """
        Record an admin decision on one refund.

        "approved" lands as "processed"; any other decision is stored as given.
        The originating Payment row is left as it is.
        """
        refund = db.query(Refund).filter(Refund.id == refund_id).first()
        if not refund:
            raise RefundNotFound(f"Refund {refund_id} not found")
        status = "processed" if decision == "approved" else decision
        if status not in REFUND_STATUSES:
            raise ValidationError(f"Unknown refund decision: {decision!r}")

        refund.status = status
        if amount is not None:
            refund.amount = float(amount)
        if reason:
            refund.reason = reason
        if notes is not None:
            refund.notes = notes
        refund.processed_by = processed_by
        refund.processed_at = datetime.utcnow()
        db.commit()
        db.refresh(refund)
        log.info("refund %s -> %s by %s", refund.id, refund.status, processed_by)
        return refund

    def bulk_refund_action(self, db: Session, action: BulkRefundAction, processed_by: Optional[str] = None) -> int:
        """One UPDATE for the whole id set. Ids with no row are skipped silently."""
        status = "approved" if action.action == "approve" else "rejected"
        values: Dict[str, Any] = {
            "status": status,
            "processed_by": processed_by,
            "processed_at": datetime.utcnow(),
        }
        if action.notes is not None:
            values["notes"] = action.notes
        try:
            result = db.execute(
                update(Refund)
                .where(Refund.id.in_(action.refund_ids))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            log.exception("bulk refund %s failed for %d ids", action.action, len(action.refund_ids))
            raise BulkActionFailed(f"Bulk {action.action} failed") from e
        log.info("bulk refund %s: %d of %d ids updated", action.action, result.rowcount, len(action.refund_ids))
        return result.rowcount

    # ---- invoices ---------------------------------------------------------------

    def generate_invoice(self, payment_id: Any) -> str:
        if payment_id in (None, ""):
            raise ValidationError(fields=["paymentId"])
        return f"{self.website_url}/invoices/{payment_id}.pdf"

    # ---- read side --------------------------------------------------------------

    def dashboard_summary(self) -> Dict[str, Any]:
        # independent reads, each on its own session
        queries = {
            "users": lambda s: s.query(func.count(User.id)).scalar() or 0,
            "courses": lambda s: s.query(func.count(Course.id)).scalar() or 0,
            "admins": lambda s: s.query(func.count(Admin.id)).scalar() or 0,
            "payments": lambda s: s.query(func.count(Payment.id)).scalar() or 0,
            "revenue": lambda s: (
                s.query(func.coalesce(func.sum(Payment.amount), 0.0))
                .filter(Payment.status == "success")
                .scalar()
            ),
            "refunds": lambda s: s.query(Refund.status, func.count(Refund.id)).group_by(Refund.status).all(),
            "plans": lambda s: s.query(User.plan_tier, func.count(User.id)).group_by(User.plan_tier).all(),
        }
        with ThreadPoolExecutor(max_workers=len(queries)) as pool:
            futures = {key: pool.submit(self._read, fn) for key, fn in queries.items()}
            results = {key: fut.result() for key, fut in futures.items()}

        refunds = {status: 0 for status in REFUND_STATUSES}
        refunds.update({status: int(n) for status, n in results["refunds"]})
        plans = {tier: 0 for tier in PLAN_TIERS}
        plans.update({tier: int(n) for tier, n in results["plans"]})
        return {
            "users": int(results["users"]),
            "courses": int(results["courses"]),
            "admins": int(results["admins"]),
            "payments": {"count": int(results["payments"]), "amount": round(float(results["revenue"]), 2)},
            "refunds": refunds,
            "plans": plans,
            "paid": plans["monthly"] + plans["yearly"],
        }

    def _read(self, fn: Callable[[Session], Any]) -> Any:
        s = self.sessions()
        try:
            return fn(s)
        finally:
            s.close()

    def billing_analytics(self, db: Session, period: str = "month", now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        if period not in PERIOD_DAYS:
            raise ValidationError(f"Unknown period: {period!r}")
        start = now - timedelta(days=PERIOD_DAYS[period])
        prev_start = start - timedelta(days=PERIOD_DAYS[period])

        payments = db.query(Payment).filter(Payment.date >= start, Payment.date <= now).all()
        successful = [p for p in payments if p.status == "success"]
        revenue = sum(p.amount for p in successful)
        prev_revenue = (
            db.query(func.coalesce(func.sum(Payment.amount), 0.0))
            .filter(Payment.status == "success", Payment.date >= prev_start, Payment.date < start)
            .scalar()
        )

        by_plan: Dict[str, float] = {}
        for p in successful:
            key = p.plan or "other"
            by_plan[key] = round(by_plan.get(key, 0.0) + p.amount, 2)

        active = db.query(func.count(Subscription.id)).filter(Subscription.active.is_(True)).scalar() or 0
        new = (
            db.query(func.count(Subscription.id))
            .filter(Subscription.created_at >= start, Subscription.created_at <= now)
            .scalar() or 0
        )
        cancelled = (
            db.query(func.count(Subscription.id))
            .filter(Subscription.cancelled_at >= start, Subscription.cancelled_at <= now)
            .scalar() or 0
        )

        if prev_revenue:
            growth = (revenue - prev_revenue) / prev_revenue * 100
        else:
            growth = 100.0 if revenue else 0.0

        return {
            "period": period,
            "startDate": start.isoformat(),
            "endDate": now.isoformat(),
            "totalRevenue": round(revenue, 2),
            "activeSubscriptions": int(active),
            "newSubscriptions": int(new),
            "cancelledSubscriptions": int(cancelled),
            "paymentSuccessRate": round(len(successful) / len(payments) * 100, 2) if payments else 0.0,
            "averageSubscriptionValue": round(revenue / len(successful), 2) if successful else 0.0,
            "monthlyGrowth": round(growth, 2),
            "revenueByPlan": by_plan,
        }

    def list_payments(self, db: Session, status: Optional[str] = None) -> List[Dict[str, Any]]:
        q = db.query(Payment)
        if status:
            q = q.filter(Payment.status == status)
        return _dicts(q.order_by(Payment.date.desc(), Payment.id.desc()).all())

    def list_refunds(self, db: Session, status: Optional[str] = None) -> List[Dict[str, Any]]:
        q = db.query(Refund)
        if status:
            q = q.filter(Refund.status == status)
        return _dicts(q.order_by(Refund.date.desc(), Refund.id.desc()).all())

    def list_billing_operations(self, db: Session, period: Optional[str] = None,
                                now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        q = db.query(BillingOperation)
        since = _since(period, now or datetime.utcnow())
        if since is not None:
            q = q.filter(BillingOperation.date >= since)
        return _dicts(q.order_by(BillingOperation.date.desc(), BillingOperation.id.desc()).all())

    def list_subscriptions(self, db: Session, active_only: bool = False) -> List[Dict[str, Any]]:
        q = db.query(Subscription, User.email).outerjoin(User, User.id == Subscription.user_id)
        if active_only:
            q = q.filter(Subscription.active.is_(True))
        rows = q.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()
        return [dict(row_to_dict(sub), user_email=email) for sub, email in rows]


def _dicts(rows: Iterable) -> List[Dict[str, Any]]:
    return [row_to_dict(r) for r in rows]
