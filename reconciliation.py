# reconciliation.py
"""
Purchase reconciliation: the only writer of paid entitlements.

A purchase moves initiated -> awaiting_confirmation -> confirmed | failed.
Confirmation is client-driven: nothing happens until the user comes back from
the gateway and the success page calls confirm. The gateway status fetch always
runs before any ledger write, and the gateway cancel before any downgrade.

Known gaps kept on purpose:
  * The plan applied on confirm is the client-declared one. A mismatch with the
    gateway's plan id is logged, not rejected.
  * Two concurrent confirms for one user both write plan_tier (last write wins).
  * Email-keyed gateways (Paystack, Flutterwave) take the cancel code from the
    client, so an id with no stored Subscription is still sent to the gateway.
    Id-keyed gateways refuse such ids unless an admin is cancelling.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set, Tuple

from sqlalchemy.orm import Session

import config
from db import User, Subscription, Payment
from errors import (
    PaymentNotConfirmed, ProtectedResource, ProviderUnavailable, SubscriptionNotFound, UserNotFound,
    ValidationError,
)
from ledger import EntitlementLedger, FREE, PAID_TIERS, normalize_plan
from providers import CancelResult, Checkout, Customer, ProviderAdapter, ProviderStatus, PurchaseRequest

log = logging.getLogger("payments")

INITIATED = "initiated"
AWAITING_CONFIRMATION = "awaiting_confirmation"
CONFIRMED = "confirmed"
FAILED = "failed"


def default_prices() -> Dict[str, Dict[str, Tuple[float, str]]]:
    usd = {"monthly": (config.MONTH_COST, config.DEFAULT_CURRENCY),
           "yearly": (config.YEAR_COST, config.DEFAULT_CURRENCY)}
    prices = {name: dict(usd) for name in config.PROVIDERS}
    prices["paystack"] = {
        "monthly": (config.PAYSTACK_AMOUNT_MONTHLY, config.PAYSTACK_CURRENCY),
        "yearly": (config.PAYSTACK_AMOUNT_YEARLY, config.PAYSTACK_CURRENCY),
    }
    return prices


@dataclass
class Receipt:
    email: str
    name: str
    plan: str
    provider: str
    subscription_id: str
    amount: float
    currency: str


@dataclass
class PurchaseAttempt:
    provider: str
    plan: str
    state: str = INITIATED
    reference: Optional[str] = None
    redirect_url: Optional[str] = None
    checkout: Optional[Checkout] = None
    status: Optional[ProviderStatus] = None
    receipt: Optional[Receipt] = None


class ReconciliationService:

    def __init__(
        self,
        adapters: Dict[str, ProviderAdapter],
        ledger: Optional[EntitlementLedger] = None,
        plan_ids: Optional[Dict[str, Dict[str, str]]] = None,
        enabled: Optional[Set[str]] = None,
        prices: Optional[Dict[str, Dict[str, Tuple[float, str]]]] = None,
        timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        workers: int = config.PROVIDER_WORKERS,
    ):
        self.adapters = adapters
        self.ledger = ledger or EntitlementLedger()
        self.plan_ids = plan_ids if plan_ids is not None else config.PLAN_IDS
        self.enabled = enabled if enabled is not None else set(config.ENABLED_PROVIDERS)
        self.prices = prices if prices is not None else default_prices()
        self.timeout = timeout
        # a timed-out call keeps its worker until the SDK gives up
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provider")

    # ---- lookup helpers ------------------------------------------------------

    def adapter_for(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get((provider or "").lower())
        if adapter is None:
            raise ValidationError(f"Unsupported payment provider: {provider!r}")
        return adapter

    def plan_id_for(self, provider: str, tier: str) -> str:
        plan_id = (self.plan_ids.get(provider) or {}).get(tier)
        if not plan_id:
            raise ValidationError(f"No {tier} plan configured for {provider}")
        return plan_id

    def tier_for_plan_id(self, provider: str, plan_id: str) -> str:
        for tier, pid in (self.plan_ids.get(provider) or {}).items():
            if pid == plan_id:
                return tier
        raise ValidationError(f"Unknown {provider} plan id: {plan_id!r}")

    def price_for(self, provider: str, tier: str) -> Tuple[float, str]:
        return (self.prices.get(provider) or {}).get(tier, (0.0, config.DEFAULT_CURRENCY))

    def _call(self, provider: str, action: str, fn: Callable[..., Any], *args: Any) -> Any:
        future = self.executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            log.error("%s %s timed out after %ss", provider, action, self.timeout)
            raise ProviderUnavailable(f"{provider} {action} timed out")
        except ProviderUnavailable as e:
            log.warning("%s %s failed: %s", provider, action, e.message)
            raise
        except Exception as e:
            # SDK/network exceptions never cross this line raw
            log.exception("%s %s failed unexpectedly", provider, action)
            raise ProviderUnavailable(f"{provider} {action} failed") from e

    # ---- create --------------------------------------------------------------

    def create_purchase(self, provider: str, plan: str, customer: Customer,
                        amount: Optional[float] = None) -> PurchaseAttempt:
        """Start a checkout. Never touches the ledger."""
        provider = (provider or "").lower()
        adapter = self.adapter_for(provider)
        if provider not in self.enabled:
            raise ValidationError(f"{adapter.label or provider} payments are disabled")
        tier = normalize_plan(plan)
        if tier not in PAID_TIERS:
            raise ValidationError(f"Plan {plan!r} cannot be purchased")
        if not customer.email:
            raise ValidationError(fields=["email"])

        default_amount, currency = self.price_for(provider, tier)
        request = PurchaseRequest(
            plan_tier=tier,
            plan_id=self.plan_id_for(provider, tier),
            customer=customer,
            amount=amount or default_amount,
            currency=currency,
        )
        checkout = self._call(provider, "create", adapter.create_subscription, request)
        log.info("purchase initiated: provider=%s plan=%s ref=%s email=%s",
                 provider, tier, checkout.provider_subscription_id, customer.email)
        return PurchaseAttempt(
            provider=provider,
            plan=tier,
            state=AWAITING_CONFIRMATION,
            reference=checkout.provider_subscription_id,
            redirect_url=checkout.redirect_url,
            checkout=checkout,
        )

    # ---- confirm -------------------------------------------------------------

    def confirm_purchase(self, db: Session, provider: str, reference: str, user_id: int,
                         intended_plan: str) -> PurchaseAttempt:
        provider = (provider or "").lower()
        adapter = self.adapter_for(provider)
        tier = normalize_plan(intended_plan)
        if tier not in PAID_TIERS:
            raise ValidationError(f"Plan {intended_plan!r} cannot be purchased")
        if not reference:
            raise ValidationError(fields=["subscriberId"])
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound(f"User {user_id} not found")

        attempt = PurchaseAttempt(provider=provider, plan=tier, state=AWAITING_CONFIRMATION, reference=reference)
        try:
            status = self._call(provider, "fetch_status", adapter.fetch_status, reference)
        except ProviderUnavailable:
            attempt.state = FAILED
            raise
        attempt.status = status

        if not status.is_active:
            attempt.state = FAILED
            log.warning("confirm refused: provider=%s ref=%s user=%s status=%s",
                        provider, reference, user_id, status.status)
            raise PaymentNotConfirmed(
                f"{adapter.label or provider} reports status {status.status!r}; plan not applied"
            )

        expected = (self.plan_ids.get(provider) or {}).get(tier)
        if status.current_plan and expected and status.current_plan != expected:
            log.warning("plan conflict: provider=%s ref=%s reports plan %s, client declared %s (%s); "
                        "applying client-declared plan", provider, reference, status.current_plan, tier, expected)

        subscription_id = status.subscription_id or reference
        amount, currency = self.price_for(provider, tier)
        try:
            self.ledger.set_plan(db, user.id, tier, commit=False)
            self._record_subscription(db, user, provider, subscription_id, tier, status)
            self._record_payment(db, user, provider, subscription_id, tier, amount, currency)
            db.commit()
        except Exception:
            db.rollback()
            raise

        attempt.state = CONFIRMED
        attempt.receipt = Receipt(
            email=user.email,
            name=user.name or "",
            plan=tier,
            provider=provider,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
        )
        log.info("purchase confirmed: provider=%s ref=%s user=%s plan=%s", provider, reference, user.id, tier)
        return attempt

    def _record_subscription(self, db: Session, user: User, provider: str, subscription_id: str,
                             tier: str, status: ProviderStatus) -> Subscription:
        sub = (
            db.query(Subscription)
            .filter(Subscription.provider == provider,
                    Subscription.provider_subscription_id == subscription_id)
            .first()
        )
        if sub is None:
            sub = Subscription(user_id=user.id, provider=provider, provider_subscription_id=subscription_id)
            db.add(sub)
        sub.plan = tier
        sub.active = True
        sub.cancelled_at = None
        sub.next_billing_date = status.next_billing_date
        return sub

    def _record_payment(self, db: Session, user: User, provider: str, subscription_id: str,
                        tier: str, amount: float, currency: str) -> Payment:
        # one success row per gateway subscription; a re-confirm does not add another
        transaction_id = f"{provider}_{subscription_id}"
        payment = db.query(Payment).filter(Payment.transaction_id == transaction_id).first()
        if payment is None:
            payment = Payment(
                user_id=user.id,
                user_email=user.email,
                amount=amount,
                currency=currency,
                status="success",
                payment_method=provider,
                gateway=provider,
                transaction_id=transaction_id,
                plan=tier,
                description=f"{tier.capitalize()} plan subscription",
            )
            db.add(payment)
        return payment

    # ---- cancel --------------------------------------------------------------

    def cancel_purchase(self, db: Session, provider: str, subscription_id: str, user_id: int,
                        allow_unknown: bool = False) -> CancelResult:
        provider = (provider or "").lower()
        adapter = self.adapter_for(provider)
        if not subscription_id:
            raise ValidationError(fields=["id"])
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFound(f"User {user_id} not found")
        owned = (
            db.query(Subscription)
            .filter(Subscription.provider == provider,
                    Subscription.provider_subscription_id == subscription_id)
            .first()
        )
        if owned is not None and owned.user_id != user.id:
            raise ProtectedResource("Subscription belongs to another account")
        if owned is None and not (allow_unknown or adapter.lookup_by_email):
            raise SubscriptionNotFound(f"No {provider} subscription {subscription_id!r} on record")

        result = self._call(provider, "cancel", adapter.cancel, subscription_id)

        try:
            self.ledger.set_plan(db, user.id, FREE, commit=False)
            if owned is not None and owned.active:
                owned.active = False
                owned.cancelled_at = datetime.utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise
        log.info("subscription cancelled: provider=%s id=%s user=%s already=%s",
                 provider, subscription_id, user.id, result.already_cancelled)
        return result

    def active_subscription(self, db: Session, user_id: int, provider: Optional[str] = None) -> Optional[Subscription]:
        q = db.query(Subscription).filter(Subscription.user_id == user_id, Subscription.active.is_(True))
        if provider:
            q = q.filter(Subscription.provider == provider)
        return q.order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()
