import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field, model_validator

import assignment
import pricing
from database import Transaction, create_document, db, get_documents, paginate, update_document, utcnow
from events import ORDER_STATUS_CHANGED, fire_webhooks
from helpers import contains, find_or_404, money, oid, redirect, render, serialize
from orders import order_detail, restock
from schemas import COUPON_TYPES, ORDER_STATUSES, PAYMENT_STATUSES, USER_TYPES, Coupon, User, Webhook
from security import hash_password, public_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class StatusUpdate(BaseModel):
    status: str

    @model_validator(mode="after")
    def known_status(self):
        if self.status not in ORDER_STATUSES:
            raise ValueError(f"status must be one of {', '.join(ORDER_STATUSES)}")
        return self


class PaymentStatusUpdate(BaseModel):
    payment_status: str

    @model_validator(mode="after")
    def known_status(self):
        if self.payment_status not in PAYMENT_STATUSES:
            raise ValueError(f"payment_status must be one of {', '.join(PAYMENT_STATUSES)}")
        return self


class AssignProvider(BaseModel):
    service_provider_id: Optional[str] = None


class CouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: str
    value: float = Field(..., ge=0)
    minimum_amount: Optional[float] = Field(None, ge=0)
    maximum_discount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: bool = True
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check(self):
        if self.type not in COUPON_TYPES:
            raise ValueError(f"type must be one of {', '.join(COUPON_TYPES)}")
        if self.type == "percentage" and self.value > 100:
            raise ValueError("a percentage coupon cannot exceed 100")
        if self.starts_at and self.expires_at and self.expires_at <= self.starts_at:
            raise ValueError("expires_at must be after starts_at")
        return self


class CouponTest(BaseModel):
    amount: float = Field(..., ge=0)


class UserRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field("", max_length=255)
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(..., min_length=8)
    user_type: str = "customer"
    is_active: bool = True

    @model_validator(mode="after")
    def known_type(self):
        if self.user_type not in USER_TYPES:
            raise ValueError(f"user_type must be one of {', '.join(USER_TYPES)}")
        return self


class WebhookRequest(BaseModel):
    url: str = Field(..., pattern=r"^https?://")
    events: List[str] = Field(default_factory=list)
    active: bool = True


def _parse_day(value: Optional[str], end: bool = False) -> Optional[datetime]:
    if not value:
        return None
    try:
        day = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid date '{value}'")
    return day.replace(hour=23, minute=59, second=59) if end else day


# ------------------------------------------------------------------ dashboard

@router.get("")
@router.get("/dashboard")
def dashboard():
    now = utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    paid_this_month = db["order"].find({"payment_status": "paid", "created_at": {"$gte": month_start}}, {"total_amount": 1})
    low_stock = sum(
        1 for p in db["product"].find({"manage_stock": True}, {"stock_quantity": 1, "low_stock_threshold": 1})
        if p.get("stock_quantity", 0) <= p.get("low_stock_threshold", 5)
    )
    stats = {
        "total_products": db["product"].count_documents({}),
        "active_products": db["product"].count_documents({"status": "active"}),
        "total_orders": db["order"].count_documents({}),
        "pending_orders": db["order"].count_documents({"status": "pending"}),
        "total_customers": db["user"].count_documents({"user_type": "customer"}),
        "monthly_revenue": money(sum(o.get("total_amount", 0) for o in paid_this_month)),
        "low_stock_products": low_stock,
    }
    recent = get_documents("order", {}, limit=10, sort=[("created_at", -1)])
    return render("Admin/Dashboard", stats=stats, recent_orders=[serialize(o) for o in recent])


# ------------------------------------------------------------------ orders

@router.get("/orders")
def orders_index(search: Optional[str] = None, status: Optional[str] = None, payment_status: Optional[str] = None,
                 date_from: Optional[str] = None, date_to: Optional[str] = None, page: int = 1):
    flt = {}
    if search:
        customers = [str(u["_id"]) for u in db["user"].find({"$or": [
            {"first_name": contains(search)}, {"last_name": contains(search)}, {"email": contains(search)},
        ]}, {"_id": 1})]
        flt["$or"] = [{"order_number": contains(search)}, {"user_id": {"$in": customers}}]
    if status:
        flt["status"] = status
    if payment_status:
        flt["payment_status"] = payment_status
    created = {}
    if date_from:
        created["$gte"] = _parse_day(date_from)
    if date_to:
        created["$lte"] = _parse_day(date_to, end=True)
    if created:
        flt["created_at"] = created

    def transform(order):
        row = serialize(order)
        user = db["user"].find_one({"_id": oid(order["user_id"])}) if order.get("user_id") else None
        row["customer"] = public_user(user) if user else None
        return row

    return render(
        "Admin/Orders/Index",
        orders=paginate("order", flt, page, 20, sort=[("created_at", -1)], transform=transform),
        filters={"search": search, "status": status, "payment_status": payment_status,
                 "date_from": date_from, "date_to": date_to},
    )


@router.get("/orders/{order_id}")
def orders_show(order_id: str):
    order = find_or_404(db["order"], order_id, "Order")
    user = db["user"].find_one({"_id": oid(order["user_id"])}) if order.get("user_id") else None
    payments = [serialize(p) for p in db["orderpayment"].find({"order_id": order_id}).sort("created_at", 1)]
    providers = []
    address = order.get("shipping_address") or {}
    if address.get("city_id"):
        providers = [assignment.summary(p) for p in assignment.get_available_providers(address["city_id"])]
    return render(
        "Admin/Orders/Show",
        order=order_detail(order),
        customer=public_user(user) if user else None,
        payments=payments,
        available_providers=providers,
    )


@router.patch("/orders/{order_id}/status")
def orders_update_status(order_id: str, payload: StatusUpdate, background_tasks: BackgroundTasks):
    order = find_or_404(db["order"], order_id, "Order")
    previous = order["status"]
    if previous == "cancelled" and payload.status != "cancelled":
        raise HTTPException(status_code=422, detail="Cancelled orders cannot be reopened.")
    values = {"status": payload.status}
    if payload.status == "shipped":
        values["shipped_at"] = utcnow()
    if payload.status == "delivered":
        values["delivered_at"] = utcnow()

    with Transaction("order status") as tx:
        tx.update_one("order", {"_id": order["_id"]}, values)
        if payload.status == "cancelled" and previous != "cancelled":
            restock(tx, order)
            if order.get("service_provider_id"):
                assignment.release(tx, order)
                tx.update_one("order", {"_id": order["_id"]}, {"service_provider_status": "cancelled"})
        tx.on_commit(lambda: background_tasks.add_task(fire_webhooks, ORDER_STATUS_CHANGED, {
            "order_id": order_id,
            "order_number": order["order_number"],
            "from": previous,
            "to": payload.status,
        }))

    logger.info("Order %s status %s -> %s", order["order_number"], previous, payload.status)
    return redirect(f"/admin/orders/{order_id}", "Order status updated successfully.")


@router.patch("/orders/{order_id}/payment-status")
def orders_update_payment(order_id: str, payload: PaymentStatusUpdate):
    order = find_or_404(db["order"], order_id, "Order")
    update_document("order", {"_id": order["_id"]}, {"payment_status": payload.payment_status})
    db["orderpayment"].update_many({"order_id": order_id, "status": {"$ne": payload.payment_status}},
                                   {"$set": {"status": payload.payment_status, "updated_at": utcnow()}})
    return redirect(f"/admin/orders/{order_id}", "Payment status updated successfully.")


@router.delete("/orders/{order_id}")
def orders_destroy(order_id: str):
    order = find_or_404(db["order"], order_id, "Order")
    if order.get("payment_status") == "paid":
        raise HTTPException(status_code=400, detail="Cannot delete paid orders.")
    with Transaction("delete order") as tx:
        if order.get("service_provider_id"):
            assignment.release(tx, order)
        tx.delete_many("orderpayment", {"order_id": order_id})
        tx.delete_many("order", {"_id": order["_id"]})
    return redirect("/admin/orders", "Order deleted successfully.")


@router.post("/orders/{order_id}/assign-provider")
def orders_assign_provider(order_id: str, payload: AssignProvider):
    order = find_or_404(db["order"], order_id, "Order")
    provider = None
    if payload.service_provider_id:
        provider = find_or_404(db["serviceprovider"], payload.service_provider_id, "Service provider")
        if not provider.get("is_active", True):
            raise HTTPException(status_code=422, detail="The selected service provider is not active.")

    with Transaction("assign provider") as tx:
        assigned = assignment.reassign(tx, order, provider)
        if assigned is None:
            raise HTTPException(status_code=422, detail="No service provider available for this order.")

    return redirect(f"/admin/orders/{order_id}", "Service provider assigned successfully.",
                    service_provider=assignment.summary(assigned))


# ------------------------------------------------------------------ coupons

def _coupon_values(payload: CouponRequest, exclude_id=None) -> dict:
    code = payload.code.strip().upper()
    if db["coupon"].find_one({"code": code, "_id": {"$ne": exclude_id}}):
        raise HTTPException(status_code=422, detail="The code has already been taken.")
    values = payload.model_dump()
    values["code"] = code
    return values


@router.get("/coupons")
def coupons_index(search: Optional[str] = None, kind: Optional[str] = Query(None, alias="type"),
                  is_active: Optional[bool] = None, page: int = 1):
    flt = {}
    if search:
        flt["$or"] = [{"code": contains(search)}, {"name": contains(search)}]
    if kind:
        flt["type"] = kind
    if is_active is not None:
        flt["is_active"] = is_active
    return render(
        "Admin/Coupons/Index",
        coupons=paginate("coupon", flt, page, 20, sort=[("created_at", -1)], transform=serialize),
        filters={"search": search, "type": kind, "is_active": is_active},
    )


@router.post("/coupons")
def coupons_store(payload: CouponRequest):
    coupon_id = create_document("coupon", Coupon(**_coupon_values(payload)))
    return redirect("/admin/coupons", "Coupon created successfully.", id=coupon_id)


@router.get("/coupons/{coupon_id}")
def coupons_show(coupon_id: str):
    coupon = find_or_404(db["coupon"], coupon_id, "Coupon")
    orders = get_documents("order", {"coupon_code": coupon["code"]}, limit=10, sort=[("created_at", -1)])
    row = serialize(coupon)
    row["is_valid"] = pricing.coupon_is_valid(coupon)
    return render("Admin/Coupons/Show", coupon=row, recent_orders=[serialize(o) for o in orders])


@router.put("/coupons/{coupon_id}")
def coupons_update(coupon_id: str, payload: CouponRequest):
    coupon = find_or_404(db["coupon"], coupon_id, "Coupon")
    update_document("coupon", {"_id": coupon["_id"]}, _coupon_values(payload, coupon["_id"]))
    return redirect("/admin/coupons", "Coupon updated successfully.")


@router.delete("/coupons/{coupon_id}")
def coupons_destroy(coupon_id: str):
    coupon = find_or_404(db["coupon"], coupon_id, "Coupon")
    db["coupon"].delete_one({"_id": coupon["_id"]})
    return redirect("/admin/coupons", "Coupon deleted successfully.")


@router.post("/coupons/{coupon_id}/toggle")
def coupons_toggle(coupon_id: str):
    coupon = find_or_404(db["coupon"], coupon_id, "Coupon")
    active = not coupon.get("is_active", True)
    update_document("coupon", {"_id": coupon["_id"]}, {"is_active": active})
    return redirect("/admin/coupons", f"Coupon {'activated' if active else 'deactivated'} successfully.", is_active=active)


@router.post("/coupons/{coupon_id}/test")
def coupons_test(coupon_id: str, payload: CouponTest):
    coupon = find_or_404(db["coupon"], coupon_id, "Coupon")
    valid = pricing.coupon_is_valid(coupon, payload.amount)
    discount = pricing.coupon_discount(coupon, payload.amount)
    return {
        "valid": valid,
        "discount": discount,
        "final_amount": money(payload.amount - discount),
        "message": "Coupon is valid." if valid else "Coupon is not valid for this amount.",
    }


# ------------------------------------------------------------------ users

@router.get("/users")
def users_index(search: Optional[str] = None, user_type: Optional[str] = None, is_active: Optional[bool] = None, page: int = 1):
    flt = {}
    if search:
        flt["$or"] = [{"first_name": contains(search)}, {"last_name": contains(search)}, {"email": contains(search)}]
    if user_type:
        flt["user_type"] = user_type
    if is_active is not None:
        flt["is_active"] = is_active
    return render(
        "Admin/Users/Index",
        users=paginate("user", flt, page, 20, sort=[("created_at", -1)], transform=public_user),
        filters={"search": search, "user_type": user_type, "is_active": is_active},
    )


@router.post("/users")
def users_store(payload: UserRequest):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=422, detail="The email has already been taken.")
    values = payload.model_dump(exclude={"password"})
    values.update(email=email, password_hash=hash_password(payload.password))
    user_id = create_document("user", User(**values))
    return redirect("/admin/users", "User created successfully.", id=user_id)


@router.get("/users/{user_id}")
def users_show(user_id: str):
    user = find_or_404(db["user"], user_id, "User")
    orders = get_documents("order", {"user_id": user_id}, limit=10, sort=[("created_at", -1)])
    return render(
        "Admin/Users/Show",
        user=public_user(user),
        orders=[serialize(o) for o in orders],
        addresses=[serialize(a) for a in db["useraddress"].find({"user_id": user_id})],
    )


@router.post("/users/{user_id}/toggle")
def users_toggle(user_id: str, admin: dict = Depends(require_admin)):
    user = find_or_404(db["user"], user_id, "User")
    if user["_id"] == admin["_id"]:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account.")
    active = not user.get("is_active", True)
    update_document("user", {"_id": user["_id"]}, {"is_active": active})
    return redirect("/admin/users", f"User {'activated' if active else 'deactivated'} successfully.", is_active=active)


# ------------------------------------------------------------------ webhooks

@router.get("/webhooks")
def webhooks_index():
    return render("Admin/Webhooks/Index", webhooks=[serialize(h) for h in get_documents("webhook", sort=[("created_at", -1)])])


@router.post("/webhooks")
def webhooks_store(payload: WebhookRequest):
    webhook_id = create_document("webhook", Webhook(**payload.model_dump()))
    return redirect("/admin/webhooks", "Webhook registered successfully.", id=webhook_id)


@router.delete("/webhooks/{webhook_id}")
def webhooks_destroy(webhook_id: str):
    hook = find_or_404(db["webhook"], webhook_id, "Webhook")
    db["webhook"].delete_one({"_id": hook["_id"]})
    return redirect("/admin/webhooks", "Webhook deleted successfully.")
