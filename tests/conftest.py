import os
import tempfile

# settings are read at import time, so they have to be in place first
_TMP = tempfile.mkdtemp(prefix="aicourse-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP, "test.db")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["APP_ENV"] = "test"
os.environ["SMTP_HOST"] = ""
os.environ["WEBSITE_URL"] = "https://aicourse.example.com"

from typing import Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from auth import create_access_token, get_password_hash  # noqa: E402
from db import Base, SessionLocal, engine, session_factory, Payment, User  # noqa: E402
from errors import ProviderUnavailable  # noqa: E402
from providers import Checkout, ProviderAdapter, ProviderStatus, PurchaseRequest  # noqa: E402
from reconciliation import ReconciliationService  # noqa: E402

PLAN_IDS = {
    "stripe": {"monthly": "price_month", "yearly": "price_year"},
    "paypal": {"monthly": "P-MONTH", "yearly": "P-YEAR"},
    "paystack": {"monthly": "PLN_month", "yearly": "PLN_year"},
}


class FakeAdapter(ProviderAdapter):
    """In-memory gateway; tests set `statuses` per reference."""

    def __init__(self, name: str, lookup_by_email: bool = False):
        self.name = name
        self.label = name.capitalize()
        self.lookup_by_email = lookup_by_email
        self.statuses: Dict[str, ProviderStatus] = {}
        self.errors: Dict[str, Exception] = {}
        self.cancelled: set = set()
        self.calls: List[tuple] = []
        self.created: List[PurchaseRequest] = []

    def create_subscription(self, request: PurchaseRequest) -> Checkout:
        self.calls.append(("create", request.plan_id))
        self.created.append(request)
        ref = f"sub_{len(self.created)}"
        return Checkout(provider_subscription_id=ref, redirect_url=f"https://pay.example.com/{ref}")

    def fetch_status(self, reference: str) -> ProviderStatus:
        self.calls.append(("fetch", reference))
        if reference in self.errors:
            raise self.errors[reference]
        return self.statuses.get(reference, ProviderStatus(is_active=False, status="pending"))

    def _cancel(self, subscription_id: str):
        self.calls.append(("cancel", subscription_id))
        if subscription_id in self.errors:
            raise self.errors[subscription_id]
        if subscription_id in self.cancelled:
            raise ProviderUnavailable(f"{subscription_id} is already cancelled")
        self.cancelled.add(subscription_id)
        return {"id": subscription_id, "status": "cancelled"}

    def _already_cancelled(self, subscription_id: str) -> bool:
        return subscription_id in self.cancelled

    def activate(self, reference: str, plan_id: Optional[str] = None, subscription_id: Optional[str] = None):
        self.statuses[reference] = ProviderStatus(
            is_active=True, status="active", current_plan=plan_id,
            subscription_id=subscription_id or reference,
        )


@pytest.fixture(autouse=True)
def _fresh_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    SessionLocal.remove()


@pytest.fixture
def db():
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def adapters():
    return {
        "stripe": FakeAdapter("stripe"),
        "paypal": FakeAdapter("paypal"),
        "paystack": FakeAdapter("paystack", lookup_by_email=True),
    }


@pytest.fixture
def service(adapters):
    return ReconciliationService(
        adapters,
        plan_ids=PLAN_IDS,
        enabled={"stripe", "paypal", "paystack"},
        timeout=2,
    )


@pytest.fixture
def client(service):
    from main import app
    from payment_routes import get_reconciliation_service

    app.dependency_overrides[get_reconciliation_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_user(db, email: str, plan_tier: str = "free", name: str = "Test User", password: str = "secret123") -> User:
    user = User(email=email, name=name, hashed_password=get_password_hash(password), plan_tier=plan_tier)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_payment(db, user: User, amount: float = 9.0, status: str = "success",
                 transaction_id: str = "stripe_sub_1", plan: str = "monthly", **kw) -> Payment:
    payment = Payment(
        user_id=user.id, user_email=user.email, amount=amount, currency="USD", status=status,
        payment_method="stripe", gateway="stripe", transaction_id=transaction_id, plan=plan, **kw,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


def auth_headers(email: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(sub=email)}"}


def signup(client, email: str, name: str = "Ada", password: str = "secret123"):
    return client.post("/api/signup", json={"email": email, "mName": name, "password": password, "type": "free"})
