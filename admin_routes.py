# admin_routes.py
from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from db import get_db
from auth import AuthContext, require_admin
from admin_promotion import AdminPromotionService

router = APIRouter(prefix="/api", tags=["admin"])

promotions = AdminPromotionService()


class AdminEmailIn(BaseModel):
    email: EmailStr


@router.get("/getadmins")
def get_admins(db: Session = Depends(get_db), ctx: AuthContext = Depends(require_admin)):
    """Admins plus every non-admin user, for the admin-management screen."""
    return promotions.list_admins(db)


@router.post("/addadmin")
def add_admin(payload: AdminEmailIn, db: Session = Depends(get_db),
              ctx: AuthContext = Depends(require_admin)):
    admin = promotions.promote(db, str(payload.email))
    return {"success": True, "message": "Admin added successfully", "email": admin.email, "type": admin.type}


@router.post("/removeadmin")
def remove_admin(payload: AdminEmailIn, db: Session = Depends(get_db),
                 ctx: AuthContext = Depends(require_admin)):
    promotions.demote(db, str(payload.email))
    return {"success": True, "message": "Admin removed successfully"}
