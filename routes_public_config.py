# routes_public_config.py
# -*- coding: utf-8 -*-
from fastapi import APIRouter

import config
from ledger import PLAN_DISPLAY_NAMES, MONTHLY, YEARLY
from reconciliation import default_prices

router = APIRouter(prefix="/api", tags=["public"])

PROVIDER_LABELS = {
    "paypal": "PayPal",
    "stripe": "Stripe",
    "razorpay": "Razorpay",
    "paystack": "Paystack",
    "flutterwave": "Flutterwave",
}


@router.get("/payment-config")
def payment_config():
    """Which gateways the pricing page may offer, with their plan prices."""
    prices = default_prices()
    providers = []
    for name in config.PROVIDERS:
        plans = {}
        for tier in (MONTHLY, YEARLY):
            amount, currency = prices[name][tier]
            plans[tier] = {
                "name": PLAN_DISPLAY_NAMES[tier],
                "price": amount,
                "currency": currency,
                "planId": config.PLAN_IDS[name][tier],
            }
        providers.append({
            "name": name,
            "label": PROVIDER_LABELS[name],
            "enabled": name in config.ENABLED_PROVIDERS,
            "plans": plans,
        })
    return {
        "currency": config.DEFAULT_CURRENCY,
        "plans": {
            MONTHLY: {"name": PLAN_DISPLAY_NAMES[MONTHLY], "price": config.MONTH_COST},
            YEARLY: {"name": PLAN_DISPLAY_NAMES[YEARLY], "price": config.YEAR_COST},
        },
        "providers": providers,
        "keys": {
            "stripe": config.STRIPE_PUBLISHABLE_KEY,
            "paystack": config.PAYSTACK_PUBLIC_KEY,
            "flutterwave": config.FLUTTERWAVE_PUBLIC_KEY,
            "razorpay": config.RAZORPAY_KEY_ID,
            "paypal": config.PAYPAL_CLIENT_ID,
        },
    }
