# signup_routes.py
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session

from db import get_db
from auth import AuthContext, authenticate_user, context_for, create_access_token, get_password_hash, require_admin
from admin_promotion import AdminPromotionService

router = APIRouter(prefix="/api", tags=["auth"])

promotions = AdminPromotionService()


class SignupIn(BaseModel):
    email: EmailStr
    mName: str
    password: str
    type: str | None = None  # sent by the old client; never trusted

    @field_validator("mName")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("name cannot be empty")
        return v

    @field_validator("password")
    @classmethod
    def password_min_len(cls, v: str) -> str:
        if v is None or len(v) < 6:
            raise ValueError("password must be at least 6 characters")
        return v


class SigninIn(BaseModel):
    email: EmailStr
    password: str


class DeleteUserIn(BaseModel):
    userId: int


@router.post("/signup")
def signup(payload: SignupIn, db: Session = Depends(get_db)):
    """
    Create a free account and return a bearer token.
    The very first account also becomes the main admin with the forever plan.
    """
    user, is_first = promotions.signup(db, str(payload.email), payload.mName,
                                       get_password_hash(payload.password))
    return {
        "success": True,
        "message": "Account created successfully",
        "userId": user.id,
        "isFirstUser": is_first,
        "plan": user.plan_tier,
        "access_token": create_access_token(sub=user.email),
        "token_type": "bearer",
    }


@router.post("/signin")
def signin(payload: SigninIn, db: Session = Depends(get_db)):
    user = authenticate_user(db, str(payload.email).strip().lower(), payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    ctx = context_for(db, user)
    return {
        "success": True,
        "access_token": create_access_token(sub=user.email),
        "token_type": "bearer",
        "userId": user.id,
        "email": user.email,
        "name": user.name,
        "plan": user.plan_tier,
        "is_admin": ctx.is_admin,
    }


@router.post("/deleteuser")
def delete_user(payload: DeleteUserIn, db: Session = Depends(get_db),
                ctx: AuthContext = Depends(require_admin)):
    promotions.delete_user(db, payload.userId)
    return {"success": True, "message": "User deleted"}
