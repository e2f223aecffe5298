# admin_bootstrap.py
import logging
import os

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from db import get_db
from admin_promotion import AdminPromotionService

router = APIRouter(prefix="/api/admin_bootstrap", tags=["admin"])
log = logging.getLogger("admin")

BOOT_TOKEN = os.getenv("ADMIN_SETUP_TOKEN")  # unset -> endpoint always refuses


@router.post("/grant")
def grant_admin(email: str, token: str, db: Session = Depends(get_db)):
    """Out-of-band promotion for when no admin can log in to do it."""
    if not BOOT_TOKEN or token != BOOT_TOKEN:
        log.warning("admin bootstrap refused for %s", email)
        raise HTTPException(status_code=403, detail="Forbidden")
    admin = AdminPromotionService().promote(db, email)
    return {"ok": True, "email": admin.email, "type": admin.type}
