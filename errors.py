# errors.py
"""
Error taxonomy shared by the billing core and the HTTP layer.

Services raise these; main.py registers one handler that renders
{"success": false, "error": <code>, "message": <text>} with the class status.
"""
from typing import List, Optional


class BillingError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str = "", fields: Optional[List[str]] = None):
        self.fields = list(fields or [])
        if not message and self.fields:
            message = "Missing required fields: " + ", ".join(self.fields)
        super().__init__(message)

    def to_dict(self) -> dict:
        out = super().to_dict()
        if self.fields:
            out["fields"] = self.fields
        return out


class ProviderUnavailable(BillingError):
    status_code = 502
    code = "provider_unavailable"


class PaymentNotConfirmed(ProviderUnavailable):
    """Gateway answered, but the subscription is not active/paid."""
    status_code = 402
    code = "payment_not_confirmed"


class UserNotFound(BillingError):
    status_code = 404
    code = "user_not_found"


class AdminNotFound(BillingError):
    status_code = 404
    code = "admin_not_found"


class RefundNotFound(BillingError):
    status_code = 404
    code = "refund_not_found"


class PaymentNotFound(BillingError):
    status_code = 404
    code = "payment_not_found"


class ProtectedResource(BillingError):
    status_code = 403
    code = "protected_resource"


class DuplicateUser(BillingError):
    status_code = 400
    code = "user_exists"


class BulkActionFailed(BillingError):
    status_code = 500
    code = "bulk_action_failed"


class SubscriptionNotFound(BillingError):
    status_code = 404
    code = "subscription_not_found"
