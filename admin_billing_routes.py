# admin_billing_routes.py
"""Admin billing screens: payments, refunds, invoices, manual entries, subscriptions."""
from typing import Any, List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from auth import AuthContext, require_admin
from billing_ops import BillingOperationsService, BulkRefundAction
from db import get_db, row_to_dict, User
from errors import UserNotFound, ValidationError
from notifier import send_cancellation_notice
from payment_routes import get_reconciliation_service
from reconciliation import ReconciliationService

router = APIRouter(prefix="/api/admin", tags=["admin-billing"])

billing = BillingOperationsService()


class ProcessRefundIn(BaseModel):
    refundId: int
    # older admin screens send the decision as "status"
    decision: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[float] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class BulkRefundIn(BaseModel):
    refundIds: List[int] = Field(min_length=1)
    action: Literal["approve", "reject"]
    notes: Optional[str] = None


class InvoiceIn(BaseModel):
    paymentId: Any = None


class ManualBillingIn(BaseModel):
    userEmail: EmailStr
    amount: float = Field(gt=0)
    currency: str = "USD"
    description: str
    paymentMethod: str = "manual"
    type: Literal["manual", "recurring", "adjustment"] = "manual"


class AdminCancelIn(BaseModel):
    userId: int
    provider: Optional[str] = None
    subscriptionId: Optional[str] = None


# ---- payments / refunds -------------------------------------------------------

@router.get("/payments")
def list_payments(status: Optional[str] = None, db: Session = Depends(get_db),
                  ctx: AuthContext = Depends(require_admin)):
    return {"success": True, "payments": billing.list_payments(db, status=status)}


@router.get("/refunds")
def list_refunds(status: Optional[str] = None, db: Session = Depends(get_db),
                 ctx: AuthContext = Depends(require_admin)):
    return {"success": True, "refunds": billing.list_refunds(db, status=status)}


@router.post("/refunds/process")
def process_refund(payload: ProcessRefundIn, db: Session = Depends(get_db),
                   ctx: AuthContext = Depends(require_admin)):
    decision = payload.decision or payload.status or "processed"
    refund = billing.process_refund(
        db, payload.refundId, decision, processed_by=ctx.email,
        amount=payload.amount, reason=payload.reason, notes=payload.notes,
    )
    return {"success": True, "refund": row_to_dict(refund)}


@router.post("/refunds/bulk")
def bulk_refunds(payload: BulkRefundIn, db: Session = Depends(get_db),
                 ctx: AuthContext = Depends(require_admin)):
    action = BulkRefundAction(refund_ids=payload.refundIds, action=payload.action, notes=payload.notes)
    updated = billing.bulk_refund_action(db, action, processed_by=ctx.email)
    return {"success": True, "updated": updated}


@router.post("/invoices/generate")
def generate_invoice(payload: InvoiceIn, ctx: AuthContext = Depends(require_admin)):
    return {"success": True, "invoiceUrl": billing.generate_invoice(payload.paymentId)}


# ---- manual billing ------------------------------------------------------------

@router.post("/billing/manual")
def manual_billing(payload: ManualBillingIn, db: Session = Depends(get_db),
                   ctx: AuthContext = Depends(require_admin)):
    op = billing.record_manual_billing(
        db, str(payload.userEmail), payload.amount, payload.currency, payload.description,
        method=payload.paymentMethod, op_type=payload.type, processed_by=ctx.email,
    )
    return {"success": True, "operation": row_to_dict(op)}


@router.get("/billing/operations")
def billing_operations(period: Optional[str] = Query(None), db: Session = Depends(get_db),
                       ctx: AuthContext = Depends(require_admin)):
    return {"success": True, "operations": billing.list_billing_operations(db, period=period)}


@router.get("/billing/analytics")
def billing_analytics(period: str = Query("month"), db: Session = Depends(get_db),
                      ctx: AuthContext = Depends(require_admin)):
    return {"success": True, "analytics": billing.billing_analytics(db, period)}


# ---- subscriptions -------------------------------------------------------------

@router.get("/subscriptions")
def list_subscriptions(active: bool = False, db: Session = Depends(get_db),
                       ctx: AuthContext = Depends(require_admin)):
    return {"success": True, "subscriptions": billing.list_subscriptions(db, active_only=active)}


@router.post("/subscriptions/cancel")
def cancel_subscription(
    payload: AdminCancelIn,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(require_admin),
    svc: ReconciliationService = Depends(get_reconciliation_service),
):
    user = db.query(User).filter(User.id == payload.userId).first()
    if not user:
        raise UserNotFound(f"User {payload.userId} not found")
    provider, subscription_id = payload.provider, payload.subscriptionId
    if not (provider and subscription_id):
        stored = svc.active_subscription(db, user.id, provider)
        if stored is None:
            raise ValidationError("User has no active subscription", fields=["provider", "subscriptionId"])
        provider, subscription_id = stored.provider, stored.provider_subscription_id
    result = svc.cancel_purchase(db, provider, subscription_id, user.id, allow_unknown=True)
    background.add_task(send_cancellation_notice, user.email, provider, subscription_id)
    return {"success": True, "subscriptionId": result.subscription_id,
            "alreadyCancelled": result.already_cancelled}
