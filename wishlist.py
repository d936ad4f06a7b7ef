import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from cart import resolve_services, stock_allows
from catalog import product_card
from database import Transaction, create_document, db, get_documents
from helpers import find_or_404, oid, redirect, render
from schemas import Wishlist
from security import current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wishlist", tags=["wishlist"])


class WishlistRequest(BaseModel):
    product_id: str


def _entry(user: dict, product_id: str):
    return db["wishlist"].find_one({"user_id": str(user["_id"]), "product_id": product_id})


def _own_entry(wishlist_id: str, user: dict) -> dict:
    entry = find_or_404(db["wishlist"], wishlist_id, "Wishlist item")
    if entry["user_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Unauthorized action.")
    return entry


@router.get("")
def index(user: dict = Depends(current_user)):
    items = []
    for entry in get_documents("wishlist", {"user_id": str(user["_id"])}, sort=[("created_at", -1)]):
        product = db["product"].find_one({"_id": oid(entry["product_id"])})
        if product:
            items.append({"id": str(entry["_id"]), "added_at": entry["created_at"].isoformat(), "product": product_card(product)})
    return render("Wishlist/Index", wishlistItems=items)


@router.post("/add")
def add(payload: WishlistRequest, user: dict = Depends(current_user)):
    find_or_404(db["product"], payload.product_id, "Product")
    if _entry(user, payload.product_id):
        return redirect("/wishlist", "Product is already in your wishlist.", level="info")
    create_document("wishlist", Wishlist(user_id=str(user["_id"]), product_id=payload.product_id))
    return redirect("/wishlist", "Product added to wishlist!")


@router.post("/toggle")
def toggle(payload: WishlistRequest, user: dict = Depends(current_user)):
    find_or_404(db["product"], payload.product_id, "Product")
    entry = _entry(user, payload.product_id)
    if entry:
        db["wishlist"].delete_one({"_id": entry["_id"]})
        return {"success": True, "action": "removed", "message": "Removed from wishlist"}
    create_document("wishlist", Wishlist(user_id=str(user["_id"]), product_id=payload.product_id))
    return {"success": True, "action": "added", "message": "Added to wishlist"}


@router.get("/check")
def check(product_id: str, user: dict = Depends(current_user)):
    return {"in_wishlist": _entry(user, product_id) is not None}


@router.delete("")
def clear(user: dict = Depends(current_user)):
    db["wishlist"].delete_many({"user_id": str(user["_id"])})
    return redirect("/wishlist", "Wishlist cleared successfully.")


@router.delete("/{wishlist_id}")
def remove(wishlist_id: str, user: dict = Depends(current_user)):
    entry = _own_entry(wishlist_id, user)
    db["wishlist"].delete_one({"_id": entry["_id"]})
    return redirect("/wishlist", "Product removed from wishlist.")


@router.post("/{wishlist_id}/move-to-cart")
def move_to_cart(wishlist_id: str, user: dict = Depends(current_user)):
    """Put one of the product in the cart and drop it from the wishlist."""
    entry = _own_entry(wishlist_id, user)
    product = find_or_404(db["product"], entry["product_id"], "Product")
    if product.get("status", "active") != "active" or not product.get("in_stock", True):
        raise HTTPException(status_code=400, detail="Product is out of stock.")

    user_id = str(user["_id"])
    with Transaction("move to cart") as tx:
        line = db["cart"].find_one({"user_id": user_id, "product_id": entry["product_id"]})
        if line:
            if not stock_allows(product, line["quantity"] + 1):
                raise HTTPException(status_code=400, detail="Cannot add more items than are in stock.")
            tx.increment("cart", {"_id": line["_id"]}, "quantity", 1)
        else:
            tx.create_document("cart", {
                "user_id": user_id,
                "session_id": None,
                "product_id": entry["product_id"],
                "quantity": 1,
                "selected_services": resolve_services(product, []),
            })
        tx.delete_many("wishlist", {"_id": entry["_id"]})

    logger.info("Moved product %s from wishlist to cart for user %s", product.get("sku"), user_id)
    return redirect("/cart", "Product moved to cart!")
