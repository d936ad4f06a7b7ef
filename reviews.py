"""
Customer product reviews.

Reviews wait for moderation; only approved ones count towards a product's
average_rating and reviews_count, which refresh_rating keeps in step after
every change.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from database import create_document, db, update_document
from helpers import find_or_404, oid, redirect
from schemas import ProductReview
from security import current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reviews", tags=["reviews"])


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=255)
    comment: Optional[str] = Field(None, max_length=1000)


class NewReview(ReviewRequest):
    product_id: str


def refresh_rating(product_id: str):
    """Recompute a product's rating from its approved reviews."""
    stats = list(db["productreview"].aggregate([
        {"$match": {"product_id": product_id, "is_approved": True}},
        {"$group": {"_id": None, "average": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    average, count = (stats[0]["average"], stats[0]["count"]) if stats else (0, 0)
    update_document("product", {"_id": oid(product_id)}, {"average_rating": round(average, 1), "reviews_count": count})


def has_purchased(user: dict, product_id: str) -> bool:
    return db["order"].find_one({
        "user_id": str(user["_id"]),
        "payment_status": "paid",
        "items.product_id": product_id,
    }) is not None


def _own_review(review_id: str, user: dict) -> dict:
    review = find_or_404(db["productreview"], review_id, "Review")
    if review["user_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="This action is unauthorized.")
    return review


@router.post("")
def store(payload: NewReview, user: dict = Depends(current_user)):
    product = find_or_404(db["product"], payload.product_id, "Product")
    if not has_purchased(user, payload.product_id):
        raise HTTPException(status_code=422, detail="You can only review products you have purchased.")
    if db["productreview"].find_one({"product_id": payload.product_id, "user_id": str(user["_id"])}):
        raise HTTPException(status_code=422, detail="You have already reviewed this product.")

    review_id = create_document("productreview", ProductReview(user_id=str(user["_id"]), **payload.model_dump()))
    logger.info("Review %s submitted for product %s", review_id, product.get("sku"))
    return redirect(f"/products/{product['slug']}",
                    "Thank you for your review! It will be published after approval.", id=review_id)


@router.put("/{review_id}")
def update(review_id: str, payload: ReviewRequest, user: dict = Depends(current_user)):
    review = _own_review(review_id, user)
    values = payload.model_dump()
    values["is_approved"] = False
    update_document("productreview", {"_id": review["_id"]}, values)
    if review.get("is_approved"):
        refresh_rating(review["product_id"])
    return redirect("/orders", "Review updated successfully!")


@router.delete("/{review_id}")
def destroy(review_id: str, user: dict = Depends(current_user)):
    review = _own_review(review_id, user)
    db["productreview"].delete_one({"_id": review["_id"]})
    if review.get("is_approved"):
        refresh_rating(review["product_id"])
    return redirect("/orders", "Review deleted successfully.")
