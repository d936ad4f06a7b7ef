import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

import pricing
from database import create_document, db, update_document, utcnow
from helpers import find_or_404, oid, redirect, render
from security import Visitor, visitor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cart"])


def stock_allows(product: dict, quantity: int) -> bool:
    if not product.get("manage_stock", True):
        return True
    return product.get("stock_quantity", 0) >= quantity


def resolve_services(product: dict, requested: Optional[List[str]]) -> List[str]:
    """Validate the services picked for a product and add the mandatory ones."""
    chosen: List[str] = []
    for service_id in requested or []:
        service = db["productservice"].find_one({"_id": oid(service_id), "is_active": True})
        if not service or pricing.find_assignment(product, service_id) is None:
            raise HTTPException(status_code=422, detail="Selected service is not available for this product")
        if service_id not in chosen:
            chosen.append(service_id)

    for assignment in product.get("services", []):
        service = db["productservice"].find_one({"_id": oid(assignment["service_id"]), "is_active": True})
        if service and pricing.is_mandatory(service, assignment) and assignment["service_id"] not in chosen:
            chosen.append(assignment["service_id"])
    return chosen


def priced_services(product: dict, service_ids: List[str]) -> List[dict]:
    out = []
    for service_id in service_ids:
        assignment = pricing.find_assignment(product, service_id)
        service = db["productservice"].find_one({"_id": oid(service_id)})
        if not service or assignment is None:
            continue
        price = pricing.service_price(service, assignment)
        out.append({"id": service_id, "name": service["name"], "price": price, "is_free": price == 0})
    return out


def load_lines(owner: Visitor) -> List[dict]:
    """Cart lines for the visitor, joined with their product and priced services."""
    lines = []
    for row in db["cart"].find(owner.owner_filter()).sort("created_at", 1):
        product = db["product"].find_one({"_id": oid(row["product_id"])})
        if not product:
            continue
        services = priced_services(product, row.get("selected_services", []))
        unit_price = pricing.final_price(product)
        services_total = round(sum(s["price"] for s in services), 2)
        brand = db["brand"].find_one({"_id": oid(product["brand_id"])}) if product.get("brand_id") else None
        lines.append({
            "id": str(row["_id"]),
            "quantity": row["quantity"],
            "unit_price": unit_price,
            "selected_services": services,
            "services_total": services_total,
            "item_total": round(unit_price * row["quantity"] + services_total, 2),
            "product": {
                "id": str(product["_id"]),
                "name": product["name"],
                "slug": product.get("slug"),
                "sku": product.get("sku"),
                "price": float(product.get("price", 0)),
                "sale_price": product.get("sale_price"),
                "final_price": unit_price,
                "discount_percentage": pricing.discount_percentage(product),
                "stock_quantity": product.get("stock_quantity", 0),
                "in_stock": product.get("in_stock", True),
                "image": product.get("image") or "products/placeholder-product.jpg",
                "brand": {"name": brand["name"], "slug": brand["slug"]} if brand else None,
            },
            "product_model": product,
        })
    return lines


def public_lines(lines: List[dict]) -> List[dict]:
    return [{k: v for k, v in line.items() if k != "product_model"} for line in lines]


def applied_coupon(owner: Visitor) -> Optional[dict]:
    state = db["visitorsession"].find_one({"key": owner.key})
    return state.get("applied_coupon") if state else None


def set_applied_coupon(owner: Visitor, coupon: Optional[dict]):
    db["visitorsession"].update_one(
        {"key": owner.key},
        {"$set": {"applied_coupon": coupon, "updated_at": utcnow()}, "$setOnInsert": {"created_at": utcnow()}},
        upsert=True,
    )


def summary_for(owner: Visitor, lines: List[dict]) -> dict:
    """Cart totals including the visitor's coupon, re-checked against today's subtotal."""
    applied = applied_coupon(owner)
    discount = 0.0
    if applied:
        coupon = db["coupon"].find_one({"code": applied["code"]})
        subtotal = sum(l["unit_price"] * l["quantity"] for l in lines)
        if coupon and pricing.coupon_is_valid(coupon, subtotal):
            discount = pricing.coupon_discount(coupon, subtotal)
            applied = dict(applied, discount_amount=discount)
        else:
            applied = None
    return pricing.summarize(lines, discount, applied)


def cart_count(owner: Visitor) -> int:
    return sum(row.get("quantity", 0) for row in db["cart"].find(owner.owner_filter()))


def owned_line(cart_id: str, owner: Visitor) -> dict:
    row = find_or_404(db["cart"], cart_id, "Cart item")
    if not owner.owns(row):
        raise HTTPException(status_code=403, detail="Unauthorized action.")
    return row


def merge_guest_cart(session_id: str, user_id: str):
    """Move a guest's lines onto the user's cart after they sign in."""
    if not session_id:
        return
    guest_rows = list(db["cart"].find({"session_id": session_id, "user_id": None}))
    for row in guest_rows:
        existing = db["cart"].find_one({"user_id": user_id, "product_id": row["product_id"]})
        if existing:
            product = db["product"].find_one({"_id": oid(row["product_id"])}) or {}
            quantity = existing["quantity"] + row["quantity"]
            if product.get("manage_stock", True):
                quantity = min(quantity, max(product.get("stock_quantity", 0), 1))
            services = list(dict.fromkeys(existing.get("selected_services", []) + row.get("selected_services", [])))
            update_document("cart", {"_id": existing["_id"]}, {"quantity": quantity, "selected_services": services})
            db["cart"].delete_one({"_id": row["_id"]})
        else:
            update_document("cart", {"_id": row["_id"]}, {"user_id": user_id, "session_id": None})
    if guest_rows:
        logger.info("Merged %d guest cart line(s) into user %s", len(guest_rows), user_id)


class AddToCart(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    selected_services: List[str] = Field(default_factory=list)


class UpdateQuantity(BaseModel):
    quantity: int = Field(..., ge=1)


class UpdateServices(BaseModel):
    selected_services: List[str] = Field(default_factory=list)


@router.get("/cart")
def cart_index(owner: Visitor = Depends(visitor)):
    lines = load_lines(owner)
    return render("Cart/Index", cartItems=public_lines(lines), cartSummary=summary_for(owner, lines))


@router.get("/cart/count")
def count(owner: Visitor = Depends(visitor)):
    return {"count": cart_count(owner)}


@router.get("/api/cart/items")
def items(owner: Visitor = Depends(visitor)):
    lines = load_lines(owner)
    return {"items": public_lines(lines), "count": sum(l["quantity"] for l in lines)}


@router.post("/cart/add")
def add(payload: AddToCart, owner: Visitor = Depends(visitor)):
    product = find_or_404(db["product"], payload.product_id, "Product")
    if product.get("status", "active") != "active" or not product.get("in_stock", True) or not stock_allows(product, payload.quantity):
        raise HTTPException(status_code=400, detail="Product is out of stock or insufficient quantity available.")

    services = resolve_services(product, payload.selected_services)
    flt = dict(owner.owner_filter(), product_id=payload.product_id)
    existing = db["cart"].find_one(flt)
    if existing:
        quantity = existing["quantity"] + payload.quantity
        if not stock_allows(product, quantity):
            raise HTTPException(
                status_code=400,
                detail=f"Cannot add more items. Maximum available quantity is {product.get('stock_quantity', 0)}",
            )
        update_document("cart", {"_id": existing["_id"]}, {"quantity": quantity, "selected_services": services})
        message = "Cart updated successfully!"
    else:
        create_document("cart", {
            "user_id": owner.user_id,
            "session_id": None if owner.user else owner.session_id,
            "product_id": payload.product_id,
            "quantity": payload.quantity,
            "selected_services": services,
        })
        message = "Product added to cart successfully!"
    return redirect("/cart", message, cart_count=cart_count(owner))


@router.patch("/cart/{cart_id}")
def update_quantity(cart_id: str, payload: UpdateQuantity, owner: Visitor = Depends(visitor)):
    row = owned_line(cart_id, owner)
    product = find_or_404(db["product"], row["product_id"], "Product")
    if not stock_allows(product, payload.quantity):
        raise HTTPException(
            status_code=422,
            detail=f"Insufficient stock. Only {product.get('stock_quantity', 0)} items available.",
        )
    update_document("cart", {"_id": row["_id"]}, {"quantity": payload.quantity})
    lines = load_lines(owner)
    return {"success": True, "cart_summary": summary_for(owner, lines), "cart_count": cart_count(owner)}


@router.patch("/cart/{cart_id}/services")
def update_services(cart_id: str, payload: UpdateServices, owner: Visitor = Depends(visitor)):
    row = owned_line(cart_id, owner)
    product = find_or_404(db["product"], row["product_id"], "Product")
    services = resolve_services(product, payload.selected_services)
    update_document("cart", {"_id": row["_id"]}, {"selected_services": services})
    lines = load_lines(owner)
    return {"success": True, "selected_services": services, "cart_summary": summary_for(owner, lines)}


@router.delete("/cart/{cart_id}")
def remove(cart_id: str, owner: Visitor = Depends(visitor)):
    row = owned_line(cart_id, owner)
    db["cart"].delete_one({"_id": row["_id"]})
    return {"success": True, "message": "Item removed from cart.", "cart_count": cart_count(owner)}


@router.delete("/cart")
def clear(owner: Visitor = Depends(visitor)):
    db["cart"].delete_many(owner.owner_filter())
    return redirect("/cart", "Cart cleared successfully.", cart_count=0)
