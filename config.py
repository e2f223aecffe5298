# config.py
"""
Environment-driven settings for the AiCourse backend.

Everything here is read once at import time; tests and scripts that need other
values pass them explicitly to the services instead of mutating this module.
"""
import os
from typing import Dict, Set


def _bool_env(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "").strip().lower())
    if not v:
        return default
    return v in ("1", "true", "yes", "y", "t")


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


APP_NAME = os.getenv("APP_NAME", "AiCourse")
APP_ENV = os.getenv("APP_ENV", "production").strip().lower()
DIAGNOSTIC_ERRORS = APP_ENV == "development"

WEBSITE_URL = os.getenv("WEBSITE_URL", "http://localhost:4173").rstrip("/")

# Bounded wait for every gateway call; a timeout counts as ProviderUnavailable
PROVIDER_TIMEOUT_SECONDS = _float_env("PROVIDER_TIMEOUT_SECONDS", 30.0)
# Worker threads for gateway calls; hung calls hold theirs until the SDK times out
PROVIDER_WORKERS = max(1, int(_float_env("PROVIDER_WORKERS", 32)))

# ---- Pricing (display + Payment rows) ---------------------------------------
DEFAULT_CURRENCY = os.getenv("PAY_DEFAULT_CURRENCY", "USD").upper()
MONTH_COST = _float_env("MONTH_COST", 9)
YEAR_COST = _float_env("YEAR_COST", 99)

# Paystack charges in ZAR and needs explicit amounts
PAYSTACK_CURRENCY = os.getenv("PAYSTACK_CURRENCY", "ZAR").upper()
PAYSTACK_AMOUNT_MONTHLY = _float_env("PAYSTACK_AMOUNT_MONTHLY", 170)
PAYSTACK_AMOUNT_YEARLY = _float_env("PAYSTACK_AMOUNT_YEARLY", 1871)

# ---- Gateways ----------------------------------------------------------------
PROVIDERS = ("paypal", "stripe", "razorpay", "paystack", "flutterwave")

PAYPAL_ENABLED = _bool_env("PAYPAL_ENABLED", True)
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "").strip()
PAYPAL_SECRET = os.getenv("PAYPAL_APP_SECRET_KEY", "").strip()
PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox").strip().lower()

STRIPE_ENABLED = _bool_env("STRIPE_ENABLED", True)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
STRIPE_PUBLISHABLE_KEY = os.getenv("STRIPE_PUBLISHABLE_KEY", "").strip()

RAZORPAY_ENABLED = _bool_env("RAZORPAY_ENABLED", True)
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "").strip()
RAZORPAY_SECRET = os.getenv("RAZORPAY_SECRET", "").strip()

PAYSTACK_ENABLED = _bool_env("PAYSTACK_ENABLED", True)
PAYSTACK_PUBLIC_KEY = os.getenv("PAYSTACK_PUBLIC_KEY", "").strip()
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "").strip()

FLUTTERWAVE_ENABLED = _bool_env("FLUTTERWAVE_ENABLED", True)
FLUTTERWAVE_PUBLIC_KEY = os.getenv("FLUTTERWAVE_PUBLIC_KEY", "").strip()
FLUTTERWAVE_SECRET_KEY = os.getenv("FLUTTERWAVE_SECRET_KEY", "").strip()

ENABLED_PROVIDERS: Set[str] = {
    name for name, on in [
        ("paypal", PAYPAL_ENABLED),
        ("stripe", STRIPE_ENABLED),
        ("razorpay", RAZORPAY_ENABLED),
        ("paystack", PAYSTACK_ENABLED),
        ("flutterwave", FLUTTERWAVE_ENABLED),
    ] if on
}

# provider -> {"monthly": plan id, "yearly": plan id}
PLAN_IDS: Dict[str, Dict[str, str]] = {
    "paypal": {
        "monthly": os.getenv("PAYPAL_PLAN_MONTHLY", "P-1EM732768S920784HMWKW3OA"),
        "yearly": os.getenv("PAYPAL_PLAN_YEARLY", "P-8T744865W27080359MWOCE5Q"),
    },
    "stripe": {
        "monthly": os.getenv("STRIPE_PLAN_MONTHLY", "price_1OTo7CSDXmLtVnVeaHIHxqCj"),
        "yearly": os.getenv("STRIPE_PLAN_YEARLY", "price_1OTo7eSDXmLtVnVeBbn82U5B"),
    },
    "razorpay": {
        "monthly": os.getenv("RAZORPAY_PLAN_MONTHLY", "plan_NMvvtDfznbRp6V"),
        "yearly": os.getenv("RAZORPAY_PLAN_YEARLY", "plan_NMRc9HARBQRLWA"),
    },
    "paystack": {
        "monthly": os.getenv("PAYSTACK_PLAN_MONTHLY", "PLN_ouqmm8eo6i2k9k8"),
        "yearly": os.getenv("PAYSTACK_PLAN_YEARLY", "PLN_1v1xqb8io9t5lis"),
    },
    "flutterwave": {
        "monthly": os.getenv("FLUTTERWAVE_PLAN_MONTHLY", "67960"),
        "yearly": os.getenv("FLUTTERWAVE_PLAN_YEARLY", "67961"),
    },
}

# ---- Mail --------------------------------------------------------------------
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
COMPANY_NAME = os.getenv("COMPANY_NAME", "Spacester")
