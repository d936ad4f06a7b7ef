import logging
import secrets
import time
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field, field_validator

from database import Transaction, create_document, db, get_documents
from helpers import contains, find_or_404, money, oid, render, serialize
from orders import new_order_number, take_stock
from schemas import Order, OrderItem, OrderPayment, User
from security import hash_password, public_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/pos", tags=["pos"], dependencies=[Depends(require_admin)])

POS_PAYMENT_METHODS = ("cash", "card")


class PosItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class PosOrderRequest(BaseModel):
    items: List[PosItem] = Field(..., min_length=1)
    customer_id: Optional[str] = None
    payment_method: str
    notes: Optional[str] = Field(None, max_length=500)
    subtotal: Optional[float] = Field(None, ge=0)
    tax: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    amount_paid: float = Field(..., ge=0)

    @field_validator("payment_method")
    @classmethod
    def known_method(cls, v):
        if v not in POS_PAYMENT_METHODS:
            raise ValueError("Invalid payment method")
        return v


class PosCustomerRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: Optional[str] = Field(None, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)


def default_address(customer: Optional[dict]) -> dict:
    if customer is None:
        return {"address_type": "pos", "address": "POS Sale", "city": "POS", "country": "POS", "postal_code": "00000"}
    saved = db["useraddress"].find_one({"user_id": str(customer["_id"])}, sort=[("is_default", -1)])
    if saved:
        address = serialize(saved)
        address.pop("created_at", None)
        address.pop("updated_at", None)
        return address
    return {
        "address_type": "customer",
        "first_name": customer.get("first_name", ""),
        "last_name": customer.get("last_name", ""),
        "address": "Default Address",
        "phone": customer.get("phone") or "",
    }


def receipt(order: dict) -> dict:
    user = db["user"].find_one({"_id": oid(order["user_id"])}) if order.get("user_id") else None
    payments = [serialize(p) for p in db["orderpayment"].find({"order_id": str(order["_id"])})]
    return {
        "id": str(order["_id"]),
        "order_number": order["order_number"],
        "created_at": order.get("created_at"),
        "status": order["status"],
        "payment_status": order["payment_status"],
        "payment_method": order["payment_method"],
        "subtotal": order["subtotal"],
        "tax_amount": order["tax_amount"],
        "total_amount": order["total_amount"],
        "notes": order.get("notes"),
        "user": public_user(user) if user else None,
        "items": order.get("items", []),
        "payments": payments,
    }


@router.get("")
def index():
    recent = get_documents("order", {}, limit=5, sort=[("created_at", -1)])
    return render(
        "Admin/Pos/Index",
        lastOrder=receipt(recent[0]) if recent else None,
        recentOrders=[receipt(o) for o in recent],
    )


@router.get("/products")
def search_products(query: str = ""):
    flt = {"status": "active", "in_stock": True}
    if query:
        flt["$or"] = [{"name": contains(query)}, {"sku": contains(query)}, {"barcode": contains(query)}]
    rows = get_documents("product", flt, limit=10)
    return [
        {
            "id": str(p["_id"]),
            "name": p["name"],
            "sku": p.get("sku"),
            "barcode": p.get("barcode"),
            "price": p.get("sale_price") if p.get("sale_price") is not None else p.get("price"),
            "stock_quantity": p.get("stock_quantity", 0),
            "brand_id": p.get("brand_id"),
            "category_id": p.get("category_id"),
        }
        for p in rows
    ]


@router.get("/customers")
def search_customers(query: str = ""):
    flt = {"user_type": "customer", "is_active": True}
    if query:
        flt["$or"] = [{k: contains(query)} for k in ("first_name", "last_name", "email", "phone")]
    return [public_user(u) for u in get_documents("user", flt, limit=5)]


@router.post("/customers")
def create_customer(payload: PosCustomerRequest):
    email = payload.email.lower() if payload.email else f"{payload.first_name.lower().replace(' ', '')}{int(time.time())}@temp-customer.com"
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=422, detail="The email has already been taken.")
    user_id = create_document("user", User(
        first_name=payload.first_name,
        last_name=payload.last_name or "",
        email=email,
        phone=payload.phone,
        password_hash=hash_password(secrets.token_hex(16)),
        user_type="customer",
    ))
    customer = db["user"].find_one({"_id": oid(user_id)})
    return {"success": True, "customer": public_user(customer), "message": "Customer created successfully"}


@router.post("/orders")
def create_order(payload: PosOrderRequest):
    customer = find_or_404(db["user"], payload.customer_id, "Customer") if payload.customer_id else None

    products = {}
    for item in payload.items:
        if item.product_id not in products:
            products[item.product_id] = find_or_404(db["product"], item.product_id, "Product")

    subtotal = money(sum(i.price * i.quantity for i in payload.items))
    tax = money(payload.tax)
    if abs(subtotal + tax - payload.total) > 0.01:
        raise HTTPException(status_code=422, detail="Order total does not match subtotal plus tax.")
    total = money(payload.total)
    if payload.amount_paid + 0.005 < total:
        raise HTTPException(status_code=422, detail="Amount paid does not cover the order total.")

    address = default_address(customer)
    order = Order(
        order_number=new_order_number(),
        user_id=str(customer["_id"]) if customer else None,
        status="completed",
        payment_status="paid",
        payment_method=payload.payment_method,
        subtotal=subtotal,
        tax_amount=tax,
        total_amount=total,
        notes=payload.notes,
        billing_address=address,
        shipping_address=address,
        source="pos",
        items=[
            OrderItem(
                product_id=i.product_id,
                product_name=products[i.product_id]["name"],
                product_sku=products[i.product_id].get("sku"),
                quantity=i.quantity,
                unit_price=i.price,
                total_price=money(i.price * i.quantity),
            )
            for i in payload.items
        ],
    )

    with Transaction("pos order") as tx:
        order_id = tx.create_document("order", order)
        for item in payload.items:
            product = db["product"].find_one({"_id": oid(item.product_id)})
            take_stock(tx, product, item.quantity)
        tx.create_document("orderpayment", OrderPayment(
            order_id=order_id,
            amount=total,
            payment_method=payload.payment_method,
            transaction_id="POS-" + uuid.uuid4().hex[:13].upper(),
            status="paid",
            notes=payload.notes,
        ))

    logger.info("POS order %s created for %.2f", order.order_number, total)
    saved = db["order"].find_one({"_id": oid(order_id)})
    return {
        "success": True,
        "order": receipt(saved),
        "change": money(payload.amount_paid - total),
        "message": "Order created successfully",
    }


@router.get("/orders/{order_id}")
def get_order(order_id: str):
    return receipt(find_or_404(db["order"], order_id, "Order"))


@router.get("/orders/{order_id}/receipt")
def print_receipt(order_id: str):
    return render("Admin/Pos/Receipt", order=receipt(find_or_404(db["order"], order_id, "Order")))
