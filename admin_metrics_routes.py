# -*- coding: utf-8 -*-
"""
Admin dashboard totals. Read-only; the aggregations fan out on separate sessions.
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends

from auth import AuthContext, require_admin
from billing_ops import BillingOperationsService

router = APIRouter(prefix="/api", tags=["admin-metrics"])

billing = BillingOperationsService()


# the old admin client POSTs here, newer screens GET; same answer either way
@router.api_route("/dashboard", methods=["GET", "POST"])
def dashboard(ctx: AuthContext = Depends(require_admin)) -> Dict[str, Any]:
    return billing.dashboard_summary()
