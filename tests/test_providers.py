import json
from datetime import datetime
from types import SimpleNamespace

import httpx
import pytest
import stripe
from razorpay.errors import BadRequestError

from errors import ProviderUnavailable
from providers import (
    Customer, FlutterwaveAdapter, PayPalAdapter, PaystackAdapter, PurchaseRequest, RazorpayAdapter,
    StripeAdapter, parse_datetime,
)


def _request(plan_id="P-MONTH", amount=None, currency="USD"):
    return PurchaseRequest(plan_tier="monthly", plan_id=plan_id,
                           customer=Customer(email="u@x.com", name="Ada", last_name="L"),
                           amount=amount, currency=currency)


def _transport(routes):
    """routes: {(method, path): response json or callable(request) -> httpx.Response}"""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"message": "not found"})
        out = routes[key]
        if callable(out):
            return out(request)
        return httpx.Response(200, json=out)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


# ---- PayPal ------------------------------------------------------------------

def test_paypal_create_extracts_approve_link():
    t = _transport({("POST", "/v1/billing/subscriptions"): {
        "id": "I-123",
        "links": [{"rel": "self", "href": "https://x/self"}, {"rel": "approve", "href": "https://x/approve"}],
    }})
    adapter = PayPalAdapter(client_id="id", secret="sec", transport=t)
    checkout = adapter.create_subscription(_request())
    assert checkout.provider_subscription_id == "I-123"
    assert checkout.redirect_url == "https://x/approve"
    sent = json.loads(t.seen[0].content)
    assert sent["plan_id"] == "P-MONTH"
    assert sent["subscriber"]["email_address"] == "u@x.com"


def test_paypal_status_mapping():
    t = _transport({("GET", "/v1/billing/subscriptions/I-123"): {
        "id": "I-123", "status": "ACTIVE", "plan_id": "P-MONTH",
        "billing_info": {"next_billing_time": "2026-11-01T10:00:00Z"},
    }})
    status = PayPalAdapter(client_id="id", secret="sec", transport=t).fetch_status("I-123")
    assert status.is_active is True
    assert status.current_plan == "P-MONTH"
    assert status.next_billing_date == datetime(2026, 11, 1, 10, 0)


def test_paypal_suspended_is_not_active():
    t = _transport({("GET", "/v1/billing/subscriptions/I-1"): {"id": "I-1", "status": "SUSPENDED"}})
    assert PayPalAdapter(client_id="id", secret="sec", transport=t).fetch_status("I-1").is_active is False


def test_paypal_cancel_already_cancelled_reports_success():
    t = _transport({
        ("POST", "/v1/billing/subscriptions/I-1/cancel"):
            lambda r: httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY"}),
        ("GET", "/v1/billing/subscriptions/I-1"): {"id": "I-1", "status": "CANCELLED"},
    })
    result = PayPalAdapter(client_id="id", secret="sec", transport=t).cancel("I-1")
    assert result.already_cancelled is True


def test_paypal_cancel_real_failure_surfaces():
    t = _transport({
        ("POST", "/v1/billing/subscriptions/I-1/cancel"): lambda r: httpx.Response(500, text="boom"),
        ("GET", "/v1/billing/subscriptions/I-1"): {"id": "I-1", "status": "ACTIVE"},
    })
    with pytest.raises(ProviderUnavailable):
        PayPalAdapter(client_id="id", secret="sec", transport=t).cancel("I-1")


def test_paypal_without_keys_is_unavailable():
    with pytest.raises(ProviderUnavailable):
        PayPalAdapter(client_id="", secret="").fetch_status("I-1")


def test_network_error_is_provider_unavailable():
    def boom(request):
        raise httpx.ConnectError("refused", request=request)

    adapter = PayPalAdapter(client_id="id", secret="sec", transport=httpx.MockTransport(boom))
    with pytest.raises(ProviderUnavailable):
        adapter.fetch_status("I-1")


# ---- Paystack ----------------------------------------------------------------

def test_paystack_create_sends_subunits():
    t = _transport({("POST", "/transaction/initialize"): {
        "status": True, "data": {"authorization_url": "https://paystack/x", "reference": "ref_1"},
    }})
    checkout = PaystackAdapter(secret_key="sk", transport=t).create_subscription(
        _request(plan_id="PLN_1", amount=170, currency="ZAR"))
    assert checkout.redirect_url == "https://paystack/x"
    assert json.loads(t.seen[0].content)["amount"] == 17000


def test_paystack_status_by_customer_email():
    t = _transport({("GET", "/customer/u@x.com"): {"status": True, "data": {"subscriptions": [
        {"status": "cancelled", "subscription_code": "SUB_old", "plan": {"plan_code": "PLN_1"}},
        {"status": "active", "subscription_code": "SUB_new", "plan": {"plan_code": "PLN_2"},
         "next_payment_date": "2026-12-01T00:00:00.000Z"},
    ]}}})
    status = PaystackAdapter(secret_key="sk", transport=t).fetch_status("u@x.com")
    assert status.is_active is True
    assert status.subscription_id == "SUB_new"
    assert status.current_plan == "PLN_2"


def test_paystack_no_subscription_is_inactive():
    t = _transport({("GET", "/customer/u@x.com"): {"status": True, "data": {"subscriptions": []}}})
    assert PaystackAdapter(secret_key="sk", transport=t).fetch_status("u@x.com").is_active is False


def test_paystack_cancel_uses_email_token():
    t = _transport({
        ("GET", "/subscription/SUB_1"): {"status": True, "data": {"email_token": "tok", "status": "active"}},
        ("POST", "/subscription/disable"): {"status": True, "message": "Subscription disabled successfully"},
    })
    PaystackAdapter(secret_key="sk", transport=t).cancel("SUB_1")
    body = json.loads(t.seen[-1].content)
    assert body == {"code": "SUB_1", "token": "tok"}


def test_paystack_status_false_is_unavailable():
    t = _transport({("GET", "/customer/u@x.com"): {"status": False, "message": "Customer not found"}})
    with pytest.raises(ProviderUnavailable):
        PaystackAdapter(secret_key="sk", transport=t).fetch_status("u@x.com")


# ---- Flutterwave -------------------------------------------------------------

def test_flutterwave_create_and_status():
    t = _transport({
        ("POST", "/v3/payments"): {"status": "success", "data": {"link": "https://flw/x"}},
        ("GET", "/v3/subscriptions"): {"status": "success", "data": [
            {"id": 77, "status": "active", "plan": 67960, "next_due_date": "2026-11-20T00:00:00Z"},
        ]},
    })
    adapter = FlutterwaveAdapter(secret_key="sk", transport=t)
    checkout = adapter.create_subscription(_request(plan_id="67960", amount=9))
    assert checkout.redirect_url == "https://flw/x"
    status = adapter.fetch_status("u@x.com")
    assert status.is_active is True
    assert status.subscription_id == "77"
    assert t.seen[-1].url.params["email"] == "u@x.com"


def test_flutterwave_cancel():
    t = _transport({("PUT", "/v3/subscriptions/77/cancel"): {"status": "success", "data": {"status": "cancelled"}}})
    result = FlutterwaveAdapter(secret_key="sk", transport=t).cancel("77")
    assert result.already_cancelled is False


def test_flutterwave_already_cancelled_found_on_a_later_page():
    def listing(request):
        page = int(request.url.params["page"])
        data = [{"id": 900 + page, "status": "cancelled"}]
        return httpx.Response(200, json={"status": "success", "data": data,
                                         "meta": {"page_info": {"current_page": page, "total_pages": 3}}})

    t = _transport({
        ("PUT", "/v3/subscriptions/903/cancel"): lambda r: httpx.Response(400, json={"message": "already cancelled"}),
        ("GET", "/v3/subscriptions"): listing,
    })
    result = FlutterwaveAdapter(secret_key="sk", transport=t).cancel("903")
    assert result.already_cancelled is True
    pages = [r.url.params["page"] for r in t.seen if r.method == "GET"]
    assert pages == ["1", "2", "3"]
    assert all(r.url.params["status"] == "cancelled" for r in t.seen if r.method == "GET")


# ---- Stripe ------------------------------------------------------------------

def test_stripe_paid_session_with_active_subscription(monkeypatch):
    session = {"id": "cs_1", "status": "complete", "payment_status": "paid", "subscription": "sub_1"}
    sub = {"id": "sub_1", "status": "active", "current_period_end": 1790000000,
           "items": {"data": [{"price": {"id": "price_month"}}]}}
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda ref, api_key=None: session)
    monkeypatch.setattr(stripe.Subscription, "retrieve", lambda sid, api_key=None: sub)

    status = StripeAdapter(secret_key="sk_test").fetch_status("cs_1")
    assert status.is_active is True
    assert status.subscription_id == "sub_1"
    assert status.current_plan == "price_month"
    assert status.next_billing_date is not None


def test_stripe_open_session_is_not_active(monkeypatch):
    session = {"id": "cs_1", "status": "open", "payment_status": "unpaid", "subscription": None}
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda ref, api_key=None: session)
    status = StripeAdapter(secret_key="sk_test").fetch_status("cs_1")
    assert status.is_active is False


def test_stripe_error_is_normalized(monkeypatch):
    def fail(*a, **kw):
        raise stripe.InvalidRequestError("No such checkout.session", param="id")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fail)
    with pytest.raises(ProviderUnavailable):
        StripeAdapter(secret_key="sk_test").fetch_status("cs_missing")


def test_stripe_create_passes_price(monkeypatch):
    captured = {}

    def create(api_key=None, **params):
        captured.update(params)
        return {"id": "cs_9", "url": "https://checkout.stripe.com/cs_9"}

    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    checkout = StripeAdapter(secret_key="sk_test").create_subscription(_request(plan_id="price_month"))
    assert checkout.redirect_url == "https://checkout.stripe.com/cs_9"
    assert captured["line_items"] == [{"price": "price_month", "quantity": 1}]
    assert captured["mode"] == "subscription"


# ---- Razorpay ----------------------------------------------------------------

class FakeRazorpaySubscriptions:
    def __init__(self):
        self.state = {"sub_1": {"id": "sub_1", "status": "authenticated", "plan_id": "plan_M"}}

    def create(self, body):
        return {"id": "sub_2", "short_url": "https://rzp.io/i/x", "plan_id": body["plan_id"]}

    def fetch(self, sid):
        return self.state[sid]

    def cancel(self, sid, body):
        if self.state[sid]["status"] == "cancelled":
            raise BadRequestError("Subscription is not cancellable in cancelled status.")
        self.state[sid]["status"] = "cancelled"
        return self.state[sid]


def _razorpay():
    return RazorpayAdapter(client=SimpleNamespace(subscription=FakeRazorpaySubscriptions()))


def test_razorpay_create_returns_short_url():
    checkout = _razorpay().create_subscription(_request(plan_id="plan_M"))
    assert checkout.redirect_url == "https://rzp.io/i/x"


def test_razorpay_authenticated_counts_as_active_and_cancel_is_idempotent():
    adapter = _razorpay()
    assert adapter.fetch_status("sub_1").is_active is True
    assert adapter.cancel("sub_1").already_cancelled is False
    assert adapter.cancel("sub_1").already_cancelled is True
    assert adapter.fetch_status("sub_1").is_active is False


def test_razorpay_without_client_is_unavailable():
    with pytest.raises(ProviderUnavailable):
        RazorpayAdapter(key_id="", secret="").fetch_status("sub_1")


def test_parse_datetime_accepts_iso_and_epoch():
    assert parse_datetime("2026-01-02T03:04:05Z") == datetime(2026, 1, 2, 3, 4, 5)
    assert parse_datetime(0) == datetime(1970, 1, 1)
    assert parse_datetime("garbage") is None
    assert parse_datetime(None) is None
