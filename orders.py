import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

import assignment
from database import Transaction, db, paginate
from helpers import contains, find_or_404, oid, redirect, render, serialize
from security import current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

CANCELLABLE = ("pending", "processing")


def new_order_number() -> str:
    return "ORD-" + uuid.uuid4().hex[:12].upper()


def take_stock(tx: Transaction, product: dict, quantity: int):
    """Decrement stock for a managed product, refusing to go below zero."""
    if not product.get("manage_stock", True):
        return
    updated = tx.increment("product", {"_id": product["_id"], "stock_quantity": {"$gte": quantity}}, "stock_quantity", -quantity)
    if updated is None:
        raise HTTPException(status_code=400, detail=f"Product '{product['name']}' is out of stock or insufficient quantity.")
    if updated["stock_quantity"] <= 0:
        tx.update_one("product", {"_id": product["_id"]}, {"in_stock": False})


def restock(tx: Transaction, order: dict):
    for item in order.get("items", []):
        product = db["product"].find_one({"_id": oid(item["product_id"])})
        if not product or not product.get("manage_stock", True):
            continue
        updated = tx.increment("product", {"_id": product["_id"]}, "stock_quantity", item["quantity"])
        if updated["stock_quantity"] > 0 and not updated.get("in_stock", True):
            tx.update_one("product", {"_id": product["_id"]}, {"in_stock": True})


def order_row(order: dict) -> dict:
    return {
        "id": str(order["_id"]),
        "order_number": order["order_number"],
        "status": order["status"],
        "payment_status": order["payment_status"],
        "payment_method": order["payment_method"],
        "total_amount": order["total_amount"],
        "total_items": sum(i["quantity"] for i in order.get("items", [])),
        "created_at": order.get("created_at"),
    }


def order_detail(order: dict) -> dict:
    out = serialize(order)
    provider = None
    if order.get("service_provider_id"):
        doc = db["serviceprovider"].find_one({"_id": oid(order["service_provider_id"])})
        provider = assignment.summary(doc) if doc else None
    out["service_provider"] = provider
    return out


def owned_order(order_id: str, user: dict) -> dict:
    order = find_or_404(db["order"], order_id, "Order")
    if order.get("user_id") != str(user["_id"]):
        raise HTTPException(status_code=403, detail="This action is unauthorized.")
    return order


@router.get("")
def index(status: Optional[str] = None, search: Optional[str] = None, page: int = 1, user: dict = Depends(current_user)):
    flt = {"user_id": str(user["_id"])}
    if status:
        flt["status"] = status
    if search:
        flt["order_number"] = contains(search)
    orders = paginate("order", flt, page, 10, sort=[("created_at", -1)], transform=order_row)
    return render("Orders/Index", orders=orders, filters={"status": status, "search": search})


@router.get("/{order_id}")
def show(order_id: str, user: dict = Depends(current_user)):
    return render("Orders/Show", order=order_detail(owned_order(order_id, user)))


@router.post("/{order_id}/cancel")
def cancel(order_id: str, user: dict = Depends(current_user)):
    order = owned_order(order_id, user)
    if order["status"] not in CANCELLABLE:
        raise HTTPException(status_code=400, detail="Cannot cancel this order.")

    with Transaction("cancel order") as tx:
        tx.update_one("order", {"_id": order["_id"]}, {"status": "cancelled"})
        restock(tx, order)
        if order.get("service_provider_id"):
            assignment.release(tx, order)
            tx.update_one("order", {"_id": order["_id"]}, {"service_provider_status": "cancelled"})

    logger.info("Order %s cancelled by customer", order["order_number"])
    return redirect(f"/orders/{order_id}", "Order cancelled successfully.")


@router.get("/{order_id}/invoice")
def invoice(order_id: str, user: dict = Depends(current_user)):
    order = owned_order(order_id, user)
    payments = [serialize(p) for p in db["orderpayment"].find({"order_id": order_id})]
    return render("Orders/Invoice", order=order_detail(order), payments=payments)
