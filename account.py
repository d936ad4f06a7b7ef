from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from database import create_document, db, get_documents, update_document
from helpers import find_or_404, redirect, render, serialize
from orders import order_row
from schemas import UserAddress
from security import current_user, hash_password, public_user

router = APIRouter(prefix="/profile", tags=["account"])


class ProfileUpdate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=20)


class EmailUpdate(BaseModel):
    email: EmailStr
    password: str


class PasswordUpdate(BaseModel):
    current_password: str
    password: str = Field(..., min_length=8)
    password_confirmation: str


class AddressRequest(BaseModel):
    type: str = Field(..., pattern="^(billing|shipping)$")
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    address_line_1: str = Field(..., min_length=1, max_length=255)
    address_line_2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=255)
    state: Optional[str] = Field(None, max_length=255)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: str = "United Kingdom"
    phone: Optional[str] = Field(None, max_length=20)
    is_default: bool = False


def _check_password(user: dict, password: str):
    if user.get("password_hash") != hash_password(password):
        raise HTTPException(status_code=422, detail="The provided password is incorrect.")


def _owned_address(address_id: str, user: dict) -> dict:
    address = find_or_404(db["useraddress"], address_id, "Address")
    if address["user_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="This action is unauthorized.")
    return address


def _clear_defaults(user_id: str, kind: str):
    db["useraddress"].update_many({"user_id": user_id, "type": kind}, {"$set": {"is_default": False}})


@router.get("")
def index(user: dict = Depends(current_user)):
    uid = str(user["_id"])
    recent = get_documents("order", {"user_id": uid}, limit=5, sort=[("created_at", -1)])
    return render(
        "Profile/Index",
        user=public_user(user),
        recentOrders=[order_row(o) for o in recent],
        stats={
            "total_orders": db["order"].count_documents({"user_id": uid}),
            "addresses": db["useraddress"].count_documents({"user_id": uid}),
        },
    )


@router.patch("")
def update_profile(payload: ProfileUpdate, user: dict = Depends(current_user)):
    update_document("user", {"_id": user["_id"]}, payload.model_dump())
    return redirect("/profile", "Profile updated successfully.")


@router.patch("/email")
def update_email(payload: EmailUpdate, user: dict = Depends(current_user)):
    _check_password(user, payload.password)
    email = payload.email.lower()
    if db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}}):
        raise HTTPException(status_code=422, detail="The email has already been taken.")
    update_document("user", {"_id": user["_id"]}, {"email": email})
    return redirect("/profile", "Email updated successfully.")


@router.patch("/password")
def update_password(payload: PasswordUpdate, user: dict = Depends(current_user)):
    _check_password(user, payload.current_password)
    if payload.password != payload.password_confirmation:
        raise HTTPException(status_code=422, detail="The password confirmation does not match.")
    update_document("user", {"_id": user["_id"]}, {"password_hash": hash_password(payload.password)})
    return redirect("/profile", "Password updated successfully.")


@router.get("/addresses")
def addresses(user: dict = Depends(current_user)):
    rows = get_documents("useraddress", {"user_id": str(user["_id"])}, sort=[("is_default", -1), ("created_at", -1)])
    return render("Profile/Addresses", addresses=[serialize(a) for a in rows])


@router.post("/addresses")
def store_address(payload: AddressRequest, user: dict = Depends(current_user)):
    uid = str(user["_id"])
    if payload.is_default:
        _clear_defaults(uid, payload.type)
    address_id = create_document("useraddress", UserAddress(user_id=uid, **payload.model_dump()))
    return redirect("/profile/addresses", "Address added successfully.", id=address_id)


@router.put("/addresses/{address_id}")
def update_address(address_id: str, payload: AddressRequest, user: dict = Depends(current_user)):
    address = _owned_address(address_id, user)
    if payload.is_default:
        _clear_defaults(address["user_id"], payload.type)
    update_document("useraddress", {"_id": address["_id"]}, payload.model_dump())
    return redirect("/profile/addresses", "Address updated successfully.")


@router.delete("/addresses/{address_id}")
def delete_address(address_id: str, user: dict = Depends(current_user)):
    address = _owned_address(address_id, user)
    db["useraddress"].delete_one({"_id": address["_id"]})
    return redirect("/profile/addresses", "Address deleted successfully.")


@router.post("/addresses/{address_id}/default")
def set_default_address(address_id: str, user: dict = Depends(current_user)):
    address = _owned_address(address_id, user)
    _clear_defaults(address["user_id"], address["type"])
    update_document("useraddress", {"_id": address["_id"]}, {"is_default": True})
    return redirect("/profile/addresses", "Default address updated.")
