# payment_routes.py
"""
Subscription checkout for the five gateways.

Every gateway exposes the same three legs, registered from one table below:
  create   -> redirect the user to the gateway
  confirm  -> success page calls back; gateway status is re-read, then the plan applied
  cancel   -> gateway cancel first, then downgrade to free
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth import AuthContext, get_auth_context
from billing_ops import BillingOperationsService
from db import get_db, User
from errors import ProtectedResource, UserNotFound, ValidationError
from ledger import PLAN_DISPLAY_NAMES
from notifier import send_cancellation_notice, send_receipt
from providers import Customer, build_adapters
from reconciliation import ReconciliationService

log = logging.getLogger("payments")
router = APIRouter(prefix="/api", tags=["payments"])

_service: Optional[ReconciliationService] = None


def get_reconciliation_service() -> ReconciliationService:
    global _service
    if _service is None:
        _service = ReconciliationService(build_adapters())
    return _service


# ------------------------------ Bodies ---------------------------------------

class CreateBody(BaseModel):
    plan: Optional[str] = None              # "Monthly Plan" | "monthly" ...
    planId: Optional[str] = None            # gateway plan id, as the old client sends it
    email: Optional[str] = None
    name: Optional[str] = None
    lastName: Optional[str] = None
    post: Optional[str] = None
    address: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None
    brand: Optional[str] = None
    amountInZar: Optional[float] = None


class ConfirmBody(BaseModel):
    plan: Optional[str] = None
    subscriberId: Optional[str] = None
    email: Optional[str] = None
    uid: Optional[int] = None


class CancelBody(BaseModel):
    id: Optional[str] = None
    code: Optional[str] = None
    email: Optional[str] = None


class RefundRequestBody(BaseModel):
    paymentId: int
    amount: float = Field(gt=0)
    reason: str


# ------------------------------ Helpers --------------------------------------

def _target_user(db: Session, ctx: AuthContext, uid: Optional[int] = None,
                 email: Optional[str] = None) -> User:
    """Caller's own row unless an admin names someone else."""
    if uid is not None and uid != ctx.user_id:
        if not ctx.is_admin:
            raise ProtectedResource("Cannot act on another user's subscription")
        user = db.query(User).filter(User.id == uid).first()
    elif email and email.strip().lower() != ctx.email:
        if not ctx.is_admin:
            raise ProtectedResource("Cannot act on another user's subscription")
        user = db.query(User).filter(User.email == email.strip().lower()).first()
    else:
        user = db.query(User).filter(User.id == ctx.user_id).first()
    if not user:
        raise UserNotFound("User not found")
    return user


def _plan_from(svc: ReconciliationService, provider: str, body: CreateBody) -> str:
    if body.plan:
        return body.plan
    if body.planId:
        return svc.tier_for_plan_id(provider, body.planId)
    raise ValidationError(fields=["plan"])


# ------------------------------ Legs -----------------------------------------

def _create_leg(provider: str):
    def create(
        body: CreateBody,
        ctx: AuthContext = Depends(get_auth_context),
        svc: ReconciliationService = Depends(get_reconciliation_service),
    ) -> Dict[str, Any]:
        email = body.email if (body.email and ctx.is_admin) else ctx.email
        customer = Customer(
            email=email.strip().lower(),
            name=body.name or "",
            last_name=body.lastName or "",
            address=body.address or "",
            postal_code=body.post or "",
            region=body.region or "",
            country=body.country or "US",
            brand=body.brand or "",
        )
        attempt = svc.create_purchase(provider, _plan_from(svc, provider, body), customer,
                                      amount=body.amountInZar)
        out: Dict[str, Any] = {
            "success": True,
            "id": attempt.reference,
            "url": attempt.redirect_url,
            "plan": attempt.plan,
            "state": attempt.state,
        }
        if provider == "paypal":
            out["links"] = attempt.checkout.raw.get("links") or [{"rel": "approve", "href": attempt.redirect_url}]
        if provider == "razorpay":
            out["short_url"] = attempt.redirect_url
        return out
    create.__name__ = f"{provider}_create"
    return create


def _confirm_leg(provider: str):
    def confirm(
        body: ConfirmBody,
        background: BackgroundTasks,
        db: Session = Depends(get_db),
        ctx: AuthContext = Depends(get_auth_context),
        svc: ReconciliationService = Depends(get_reconciliation_service),
    ) -> Dict[str, Any]:
        user = _target_user(db, ctx, uid=body.uid)
        if not body.plan:
            raise ValidationError(fields=["plan"])
        if svc.adapter_for(provider).lookup_by_email:
            # gateway looks the customer up by email; only admins may name another one
            reference = user.email
            if body.email and ctx.is_admin:
                reference = body.email.strip().lower()
        else:
            reference = body.subscriberId
        attempt = svc.confirm_purchase(db, provider, reference, user.id, body.plan)
        background.add_task(send_receipt, attempt.receipt)
        status = attempt.status
        return {
            "success": True,
            "state": attempt.state,
            "plan": attempt.plan,
            "planName": PLAN_DISPLAY_NAMES[attempt.plan],
            "provider": provider,
            "subscriptionId": attempt.receipt.subscription_id,
            "status": status.status,
            "nextBillingDate": status.next_billing_date.isoformat() if status.next_billing_date else None,
        }
    confirm.__name__ = f"{provider}_confirm"
    return confirm


def _cancel_leg(provider: str):
    def cancel(
        body: CancelBody,
        background: BackgroundTasks,
        db: Session = Depends(get_db),
        ctx: AuthContext = Depends(get_auth_context),
        svc: ReconciliationService = Depends(get_reconciliation_service),
    ) -> Dict[str, Any]:
        user = _target_user(db, ctx, email=body.email)
        subscription_id = body.id or body.code
        if not subscription_id:
            stored = svc.active_subscription(db, user.id, provider)
            if stored is None:
                raise ValidationError(fields=["id"])
            subscription_id = stored.provider_subscription_id
        result = svc.cancel_purchase(db, provider, subscription_id, user.id, allow_unknown=ctx.is_admin)
        background.add_task(send_cancellation_notice, user.email, provider, subscription_id)
        return {
            "success": True,
            "subscriptionId": result.subscription_id,
            "alreadyCancelled": result.already_cancelled,
            "plan": "free",
        }
    cancel.__name__ = f"{provider}_cancel"
    return cancel


# provider -> (create paths, confirm paths, cancel paths); old client spellings kept
ROUTES = {
    "paypal": (["/paypal"], ["/paypaldetails"], ["/paypalcancel"]),
    "stripe": (["/stripepayment"], ["/stripedetails"], ["/stripecancel"]),
    "razorpay": (["/razorpaycreate"], ["/razorpaydetails", "/razorapydetails"], ["/razorpaycancel"]),
    "paystack": (["/paystackpayment"], ["/paystackfetch"], ["/paystackcancel"]),
    "flutterwave": (["/flutterwavepayment"], ["/flutterdetails"], ["/flutterwavecancel"]),
}

for _provider, (_creates, _confirms, _cancels) in ROUTES.items():
    for _path in _creates:
        router.add_api_route(_path, _create_leg(_provider), methods=["POST"])
    for _path in _confirms:
        router.add_api_route(_path, _confirm_leg(_provider), methods=["POST"])
    for _path in _cancels:
        router.add_api_route(_path, _cancel_leg(_provider), methods=["POST"])


# ------------------------------ Account --------------------------------------

@router.post("/subscriptiondetail")
def subscription_detail(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    svc: ReconciliationService = Depends(get_reconciliation_service),
):
    user = db.query(User).filter(User.id == ctx.user_id).first()
    sub = svc.active_subscription(db, ctx.user_id)
    if sub is None:
        return {"success": True, "plan": user.plan_tier, "subscription": None}
    return {
        "success": True,
        "plan": user.plan_tier,
        "subscription": {
            "provider": sub.provider,
            "subscriptionId": sub.provider_subscription_id,
            "plan": sub.plan,
            "active": sub.active,
            "nextBillingDate": sub.next_billing_date.isoformat() if sub.next_billing_date else None,
            "since": sub.created_at.isoformat() if sub.created_at else None,
        },
    }


@router.post("/refunds")
def request_refund(
    body: RefundRequestBody,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
):
    refund = BillingOperationsService().create_refund(db, ctx.user_id, body.paymentId, body.amount, body.reason)
    return {"success": True, "refundId": refund.id, "status": refund.status}
