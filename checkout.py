"""
Checkout: turning the visitor's cart into an order.

process() is the one place where several collections change together; it runs
inside a Transaction so a failure at any step (stock, coupon, provider) leaves
the cart, stock levels and counters as they were.
"""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator

import assignment
import pricing
import scheduling
from cart import applied_coupon, load_lines, public_lines, set_applied_coupon, stock_allows, summary_for
from database import Transaction, db
from events import ORDER_CREATED, fire_webhooks
from helpers import find_or_404, oid, redirect, render
from orders import new_order_number, owned_order, take_stock
from schemas import Order, OrderItem, OrderItemService, OrderPayment
from security import Visitor, current_user, visitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["checkout"])

PAYMENT_METHODS = ("cod", "card", "paypal")


class ApplyCoupon(BaseModel):
    coupon_code: str = Field(..., min_length=1)


class AvailabilityRequest(BaseModel):
    service_ids: List[str] = Field(..., min_length=1)
    service_date: Optional[date] = Field(None, alias="date")
    time_slot: Optional[str] = None
    city_id: Optional[str] = None
    area_id: Optional[str] = None


class CheckoutRequest(BaseModel):
    billing_first_name: str = Field(..., min_length=1, max_length=100)
    billing_last_name: str = Field(..., min_length=1, max_length=100)
    billing_phone: str = Field(..., min_length=1, max_length=20)
    billing_city_id: str
    billing_area_id: str
    billing_address: str = Field(..., min_length=1, max_length=500)

    shipping_first_name: str = Field(..., min_length=1, max_length=100)
    shipping_last_name: str = Field(..., min_length=1, max_length=100)
    shipping_phone: str = Field(..., min_length=1, max_length=20)
    shipping_city_id: str
    shipping_area_id: str
    shipping_address: str = Field(..., min_length=1, max_length=500)

    payment_method: str
    notes: Optional[str] = Field(None, max_length=500)

    service_date: Optional[date] = None
    service_time: Optional[str] = None
    service_provider_id: Optional[str] = None
    service_instructions: Optional[str] = Field(None, max_length=500)

    @field_validator("payment_method")
    @classmethod
    def known_payment_method(cls, v):
        if v not in PAYMENT_METHODS:
            raise ValueError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
        return v

    @field_validator("service_date")
    @classmethod
    def not_in_past(cls, v):
        if v is not None and v < date.today():
            raise ValueError("service_date must be today or later")
        return v

    @field_validator("service_time")
    @classmethod
    def known_slot(cls, v):
        if v is not None and v not in scheduling.TIME_SLOTS + (scheduling.FLEXIBLE,):
            raise ValueError("Unknown service time slot")
        return v


def resolve_address(payload: CheckoutRequest, kind: str) -> dict:
    city_id = getattr(payload, f"{kind}_city_id")
    area_id = getattr(payload, f"{kind}_area_id")
    city = db["city"].find_one({"_id": oid(city_id)})
    if not city:
        raise HTTPException(status_code=422, detail=f"The selected {kind} city is invalid.")
    area = db["area"].find_one({"_id": oid(area_id), "city_id": city_id})
    if not area:
        raise HTTPException(status_code=422, detail=f"The selected {kind} area is invalid.")
    return {
        "first_name": getattr(payload, f"{kind}_first_name"),
        "last_name": getattr(payload, f"{kind}_last_name"),
        "phone": getattr(payload, f"{kind}_phone"),
        "address": getattr(payload, f"{kind}_address"),
        "city_id": city_id,
        "city": city["name"],
        "area_id": area_id,
        "area": area["name"],
        "postcode": area.get("postcode"),
    }


def snapshot(line: dict) -> OrderItem:
    product = line["product_model"]
    return OrderItem(
        product_id=str(product["_id"]),
        product_name=product["name"],
        product_sku=product.get("sku"),
        quantity=line["quantity"],
        unit_price=line["unit_price"],
        total_price=round(line["unit_price"] * line["quantity"], 2),
        selected_services=[
            OrderItemService(service_id=s["id"], service_name=s["name"], price=s["price"])
            for s in line["selected_services"]
        ],
        services_total=line["services_total"],
    )


def chosen_provider(payload: CheckoutRequest) -> Optional[dict]:
    if not payload.service_provider_id:
        return None
    provider = find_or_404(db["serviceprovider"], payload.service_provider_id, "Service provider")
    bookable = all(provider.get(k) == v for k, v in assignment.AVAILABLE.items()) and assignment.has_capacity(provider)
    if not bookable:
        raise HTTPException(status_code=422, detail="The selected service provider is not available.")
    if payload.service_date and payload.service_time:
        if not assignment.slot_is_free(provider, payload.service_date, payload.service_time):
            raise HTTPException(status_code=422, detail="The selected service provider is already booked for that time slot.")
    return provider


@router.get("")
def index(owner: Visitor = Depends(visitor), user: dict = Depends(current_user)):
    lines = load_lines(owner)
    if not lines:
        return redirect("/cart", "Your cart is empty", level="warning")
    cities = [
        {"id": str(c["_id"]), "name": c["name"], "region": c.get("region")}
        for c in db["city"].find({"is_active": True}).sort([("sort_order", 1), ("name", 1)])
    ]
    return render(
        "Checkout/Index",
        cartItems=public_lines(lines),
        cartSummary=summary_for(owner, lines),
        cities=cities,
        user={k: user.get(k) for k in ("first_name", "last_name", "email", "phone")},
    )


@router.post("/apply-coupon")
def apply_coupon(payload: ApplyCoupon, owner: Visitor = Depends(visitor), user: dict = Depends(current_user)):
    coupon = db["coupon"].find_one({"code": payload.coupon_code.strip().upper()})
    if not coupon or not pricing.coupon_is_valid(coupon):
        raise HTTPException(status_code=422, detail="Invalid or expired coupon code.")

    lines = load_lines(owner)
    subtotal = sum(l["unit_price"] * l["quantity"] for l in lines)
    if not pricing.coupon_is_valid(coupon, subtotal):
        raise HTTPException(status_code=422, detail="Coupon is not valid for your cart total.")

    set_applied_coupon(owner, {
        "code": coupon["code"],
        "type": coupon["type"],
        "value": coupon["value"],
        "discount_amount": pricing.coupon_discount(coupon, subtotal),
    })
    return {"success": True, "message": "Coupon applied successfully!", "cartSummary": summary_for(owner, lines)}


@router.delete("/remove-coupon")
def remove_coupon(owner: Visitor = Depends(visitor), user: dict = Depends(current_user)):
    set_applied_coupon(owner, None)
    return {"success": True, "cartSummary": summary_for(owner, load_lines(owner))}


@router.get("/areas")
def areas(city_id: str):
    find_or_404(db["city"], city_id, "City")
    rows = db["area"].find({"city_id": city_id, "is_active": True}).sort([("sort_order", 1), ("name", 1)])
    return {"areas": [{"id": str(a["_id"]), "name": a["name"], "postcode": a.get("postcode")} for a in rows]}


@router.post("/check-availability")
def check_availability(payload: AvailabilityRequest, user: dict = Depends(current_user)):
    providers = assignment.get_available_providers(
        payload.city_id, payload.area_id, None, payload.service_ids, payload.service_date, payload.time_slot
    )
    logger.info("Availability check for %s found %d provider(s)", payload.service_ids, len(providers))
    return {
        "available_providers": [
            {
                "id": str(p["_id"]),
                "name": assignment.display_name(p),
                "rating": p.get("rating", 5.0),
                "completed_services": p.get("total_jobs_completed", 0),
            }
            for p in providers
        ]
    }


@router.post("/process")
def process(payload: CheckoutRequest, background_tasks: BackgroundTasks,
            owner: Visitor = Depends(visitor), user: dict = Depends(current_user)):
    lines = load_lines(owner)
    if not lines:
        raise HTTPException(status_code=400, detail="Your cart is empty.")

    billing = resolve_address(payload, "billing")
    shipping = resolve_address(payload, "shipping")

    for line in lines:
        product = line["product_model"]
        if not product.get("in_stock", True) or not stock_allows(product, line["quantity"]):
            raise HTTPException(status_code=400, detail=f"Product '{product['name']}' is out of stock or insufficient quantity.")

    applied = applied_coupon(owner)
    coupon = None
    discount = 0.0
    if applied:
        coupon = db["coupon"].find_one({"code": applied["code"]})
        subtotal = sum(l["unit_price"] * l["quantity"] for l in lines)
        if not coupon or not pricing.coupon_is_valid(coupon, subtotal):
            raise HTTPException(status_code=422, detail="The applied coupon is no longer valid.")
        discount = pricing.coupon_discount(coupon, subtotal)
    summary = pricing.summarize(lines, discount, applied)

    provider = chosen_provider(payload)
    scheduled = payload.service_date is not None and payload.service_time is not None

    order = Order(
        order_number=new_order_number(),
        user_id=str(user["_id"]),
        payment_method=payload.payment_method,
        subtotal=summary["subtotal"],
        total_services_amount=summary["total_services_amount"],
        tax_amount=summary["tax_amount"],
        shipping_amount=summary["shipping_amount"],
        discount_amount=summary["discount_amount"],
        total_amount=summary["total"],
        coupon_code=coupon["code"] if coupon else None,
        billing_address=billing,
        shipping_address=shipping,
        notes=payload.notes,
        items=[snapshot(l) for l in lines],
        preferred_service_date=payload.service_date.isoformat() if scheduled else None,
        service_time_slot=payload.service_time if scheduled else None,
        service_instructions=payload.service_instructions if scheduled else None,
    )

    try:
        with Transaction("checkout") as tx:
            order_id = tx.create_document("order", order)
            for line in lines:
                take_stock(tx, line["product_model"], line["quantity"])

            tx.create_document("orderpayment", OrderPayment(
                order_id=order_id,
                amount=summary["total"],
                payment_method=payload.payment_method,
                status="pending",
            ))

            if coupon:
                guard = {"_id": coupon["_id"]}
                if coupon.get("usage_limit"):
                    guard["used_count"] = {"$lt": coupon["usage_limit"]}
                if tx.increment("coupon", guard, "used_count", 1) is None:
                    raise HTTPException(status_code=422, detail="The applied coupon is no longer valid.")

            saved = db["order"].find_one({"_id": oid(order_id)})
            if provider is not None:
                assignment.assign(tx, saved, provider)
            elif scheduled:
                try:
                    with tx.savepoint():
                        if assignment.auto_assign(tx, saved) is None:
                            logger.info("No service provider available for order %s", order.order_number)
                except HTTPException as e:
                    logger.warning("Failed to auto-assign service provider for %s: %s", order.order_number, e.detail)

            tx.delete_many("cart", owner.owner_filter())
            set_applied_coupon(owner, None)
            tx.on_rollback(lambda: set_applied_coupon(owner, applied))
            tx.on_commit(lambda: background_tasks.add_task(fire_webhooks, ORDER_CREATED, {
                "order_id": order_id,
                "order_number": order.order_number,
                "total": order.total_amount,
                "coupon": order.coupon_code,
            }))
    except HTTPException:
        raise
    except Exception:
        logger.exception("Order processing failed for user %s", user.get("email"))
        raise HTTPException(status_code=500, detail="Failed to process order. Please try again.")

    logger.info("Order %s placed by %s", order.order_number, user.get("email"))
    if payload.payment_method == "cod":
        return redirect(f"/orders/{order_id}", "Order placed successfully!", order_id=order_id, order_number=order.order_number)
    return redirect(f"/checkout/payment/{order_id}", order_id=order_id, order_number=order.order_number)


@router.get("/payment/{order_id}")
def payment(order_id: str, user: dict = Depends(current_user)):
    order = owned_order(order_id, user)
    if order.get("payment_status") == "paid":
        return redirect(f"/orders/{order_id}")
    return render("Checkout/Payment", order={
        "id": order_id,
        "order_number": order["order_number"],
        "total_amount": order["total_amount"],
        "payment_method": order["payment_method"],
    })
