# notifier.py
"""Outbound mail for billing events. Runs as a background task after the response."""
import logging
import smtplib
import ssl
from email.message import EmailMessage

import config
from ledger import PLAN_DISPLAY_NAMES

log = logging.getLogger("notifier")


def _smtp_configured() -> bool:
    return bool(config.SMTP_HOST and config.SMTP_USER and config.SMTP_PASS)


def _send(to: str, subject: str, body: str) -> bool:
    if not _smtp_configured():
        log.info("SMTP not configured; skipped mail to %s (%s)", to, subject)
        return False
    msg = EmailMessage()
    msg["From"] = config.SMTP_USER
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)
    try:
        ctx = ssl.create_default_context()
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as s:
            s.starttls(context=ctx)
            s.login(config.SMTP_USER, config.SMTP_PASS)
            s.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        # the plan is already applied; a lost receipt is not worth failing for
        log.error("mail to %s failed: %s", to, e)
        return False
    log.info("mail sent to %s (%s)", to, subject)
    return True


def send_receipt(receipt) -> bool:
    plan = PLAN_DISPLAY_NAMES.get(receipt.plan, receipt.plan)
    subject = f"{config.APP_NAME}: {plan} activated"
    body = f"""Hi {receipt.name or receipt.email},

Thanks for subscribing to the {plan} of {config.APP_NAME}.

Payment gateway: {receipt.provider}
Subscription ID: {receipt.subscription_id}
Amount: {receipt.amount} {receipt.currency}

Manage your subscription at {config.WEBSITE_URL}/profile

{config.COMPANY_NAME}
"""
    return _send(receipt.email, subject, body)


def send_cancellation_notice(email: str, provider: str, subscription_id: str) -> bool:
    subject = f"{config.APP_NAME}: subscription cancelled"
    body = f"""Hi,

Your {provider} subscription {subscription_id} has been cancelled and your
account is back on the Free Plan.

{config.COMPANY_NAME}
"""
    return _send(email, subject, body)
