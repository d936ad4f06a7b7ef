import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, EmailStr, Field

from cart import merge_guest_cart
from database import create_document, db
from schemas import User
from security import ADMIN_TYPES, current_user, hash_password, make_token, public_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field("", max_length=100)
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(..., min_length=8)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


def _session(user: dict, redirect_to: str) -> dict:
    token = make_token(str(user["_id"]), user["email"], user.get("user_type", "customer"))
    return {"token": token, "user": public_user(user), "redirect": redirect_to}


@router.post("/register")
def register(payload: RegisterRequest, x_session_id: Optional[str] = Header(None)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=422, detail="The email has already been taken.")
    doc = User(
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
    )
    user_id = create_document("user", doc)
    merge_guest_cart(x_session_id, user_id)
    logger.info("Registered customer %s", email)
    return _session(db["user"].find_one({"email": email}), "/")


@router.post("/login")
def login(payload: LoginRequest, x_session_id: Optional[str] = Header(None)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or user.get("password_hash") != hash_password(payload.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Your account has been deactivated.")
    merge_guest_cart(x_session_id, str(user["_id"]))
    return _session(user, "/admin" if user.get("user_type") in ADMIN_TYPES else "/")


@router.get("/me")
def me(user: dict = Depends(current_user)):
    return public_user(user)
