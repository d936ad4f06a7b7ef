"""
Back-office moderation of customer content and store settings: product
reviews, contact inquiries and key/value settings.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator

from database import create_document, db, get_documents, paginate, update_document, utcnow
from helpers import contains, find_or_404, oid, redirect, render, serialize
from reviews import refresh_rating
from schemas import INQUIRY_STATUSES, Setting
from security import public_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

REVIEW_ACTIONS = {"approve": "approved", "reject": "rejected", "delete": "deleted"}
INQUIRY_ACTIONS = {
    "mark_progress": "in_progress",
    "mark_resolved": "resolved",
    "mark_closed": "closed",
}


class BulkRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    action: str


class InquiryStatusUpdate(BaseModel):
    status: str
    admin_notes: Optional[str] = None

    @model_validator(mode="after")
    def known_status(self):
        if self.status not in INQUIRY_STATUSES:
            raise ValueError(f"status must be one of {', '.join(INQUIRY_STATUSES)}")
        return self


class SettingRequest(BaseModel):
    key: str = Field(..., min_length=1, max_length=255)
    value: str
    group: str = Field("general", min_length=1, max_length=255)


class SettingUpdate(BaseModel):
    value: str
    group: str = Field(..., min_length=1, max_length=255)


class SettingsBulk(BaseModel):
    settings: Dict[str, str]


def _groups() -> List[str]:
    return sorted(db["setting"].distinct("group"))


# ------------------------------------------------------------------ reviews

def _review_row(review: dict) -> dict:
    row = serialize(review)
    product = db["product"].find_one({"_id": oid(review["product_id"])})
    user = db["user"].find_one({"_id": oid(review["user_id"])})
    row["product"] = {"id": review["product_id"], "name": product["name"], "slug": product["slug"]} if product else None
    row["user"] = public_user(user) if user else None
    return row


def _moderate(review: dict, approved: bool):
    update_document("productreview", {"_id": review["_id"]}, {"is_approved": approved})
    refresh_rating(review["product_id"])


@router.get("/product-reviews")
def reviews_index(search: Optional[str] = None, rating: Optional[int] = None, is_approved: Optional[bool] = None,
                  page: int = 1):
    flt = {}
    if search:
        products = [str(p["_id"]) for p in db["product"].find({"name": contains(search)}, {"_id": 1})]
        users = [str(u["_id"]) for u in db["user"].find({"$or": [
            {"first_name": contains(search)}, {"last_name": contains(search)},
        ]}, {"_id": 1})]
        flt["$or"] = [
            {"title": contains(search)},
            {"comment": contains(search)},
            {"product_id": {"$in": products}},
            {"user_id": {"$in": users}},
        ]
    if rating:
        flt["rating"] = rating
    if is_approved is not None:
        flt["is_approved"] = is_approved
    return render(
        "Admin/ProductReviews/Index",
        reviews=paginate("productreview", flt, page, 20, sort=[("created_at", -1)], transform=_review_row),
        filters={"search": search, "rating": rating, "is_approved": is_approved},
    )


@router.get("/product-reviews/{review_id}")
def reviews_show(review_id: str):
    review = find_or_404(db["productreview"], review_id, "Review")
    return render("Admin/ProductReviews/Show", review=_review_row(review))


@router.patch("/product-reviews/{review_id}/approve")
def reviews_approve(review_id: str):
    _moderate(find_or_404(db["productreview"], review_id, "Review"), True)
    return redirect("/admin/product-reviews", "Review approved successfully.")


@router.patch("/product-reviews/{review_id}/reject")
def reviews_reject(review_id: str):
    _moderate(find_or_404(db["productreview"], review_id, "Review"), False)
    return redirect("/admin/product-reviews", "Review rejected successfully.")


@router.delete("/product-reviews/{review_id}")
def reviews_destroy(review_id: str):
    review = find_or_404(db["productreview"], review_id, "Review")
    db["productreview"].delete_one({"_id": review["_id"]})
    refresh_rating(review["product_id"])
    return redirect("/admin/product-reviews", "Review deleted successfully.")


@router.post("/product-reviews/bulk")
def reviews_bulk(payload: BulkRequest):
    if payload.action not in REVIEW_ACTIONS:
        raise HTTPException(status_code=422, detail="Unknown bulk action.")
    reviews = [find_or_404(db["productreview"], i, "Review") for i in payload.ids]
    ids = [r["_id"] for r in reviews]
    if payload.action == "delete":
        db["productreview"].delete_many({"_id": {"$in": ids}})
    else:
        db["productreview"].update_many({"_id": {"$in": ids}},
                                        {"$set": {"is_approved": payload.action == "approve", "updated_at": utcnow()}})
    for product_id in {r["product_id"] for r in reviews}:
        refresh_rating(product_id)
    return redirect("/admin/product-reviews", f"Reviews {REVIEW_ACTIONS[payload.action]} successfully.", count=len(reviews))


# ------------------------------------------------------------------ contact inquiries

@router.get("/contact-inquiries")
def inquiries_index(search: Optional[str] = None, status: Optional[str] = None, page: int = 1):
    flt = {}
    if search:
        flt["$or"] = [{field: contains(search)} for field in ("name", "email", "subject", "message")]
    if status:
        flt["status"] = status
    return render(
        "Admin/ContactInquiries/Index",
        inquiries=paginate("contactinquiry", flt, page, 20, sort=[("created_at", -1)], transform=serialize),
        filters={"search": search, "status": status},
        inquiry_statuses=list(INQUIRY_STATUSES),
    )


@router.get("/contact-inquiries/{inquiry_id}")
def inquiries_show(inquiry_id: str):
    return render("Admin/ContactInquiries/Show", inquiry=serialize(find_or_404(db["contactinquiry"], inquiry_id, "Inquiry")))


@router.patch("/contact-inquiries/{inquiry_id}/status")
def inquiries_status(inquiry_id: str, payload: InquiryStatusUpdate):
    inquiry = find_or_404(db["contactinquiry"], inquiry_id, "Inquiry")
    update_document("contactinquiry", {"_id": inquiry["_id"]}, payload.model_dump())
    return redirect(f"/admin/contact-inquiries/{inquiry_id}", "Inquiry status updated successfully.")


@router.delete("/contact-inquiries/{inquiry_id}")
def inquiries_destroy(inquiry_id: str):
    inquiry = find_or_404(db["contactinquiry"], inquiry_id, "Inquiry")
    db["contactinquiry"].delete_one({"_id": inquiry["_id"]})
    return redirect("/admin/contact-inquiries", "Inquiry deleted successfully.")


@router.post("/contact-inquiries/bulk")
def inquiries_bulk(payload: BulkRequest):
    ids = [oid(i) for i in payload.ids]
    if payload.action == "delete":
        count = db["contactinquiry"].delete_many({"_id": {"$in": ids}}).deleted_count
        return redirect("/admin/contact-inquiries", "Inquiries deleted successfully.", count=count)
    if payload.action not in INQUIRY_ACTIONS:
        raise HTTPException(status_code=422, detail="Unknown bulk action.")
    status = INQUIRY_ACTIONS[payload.action]
    count = db["contactinquiry"].update_many({"_id": {"$in": ids}},
                                             {"$set": {"status": status, "updated_at": utcnow()}}).modified_count
    return redirect("/admin/contact-inquiries", f"Inquiries marked as {status.replace('_', ' ')}.", count=count)


# ------------------------------------------------------------------ settings

@router.get("/settings")
def settings_index(group: str = "general", page: int = 1):
    return render(
        "Admin/Settings/Index",
        settings=paginate("setting", {"group": group}, page, 20, sort=[("key", 1)], transform=serialize),
        groups=_groups(),
        current_group=group,
    )


@router.get("/settings/group/{group}")
def settings_by_group(group: str):
    return {"group": group, "settings": {s["key"]: s["value"] for s in get_documents("setting", {"group": group})}}


@router.post("/settings")
def settings_store(payload: SettingRequest):
    if db["setting"].find_one({"key": payload.key}):
        raise HTTPException(status_code=422, detail="The key has already been taken.")
    setting_id = create_document("setting", Setting(**payload.model_dump()))
    return redirect(f"/admin/settings?group={payload.group}", "Setting created successfully.", id=setting_id)


@router.post("/settings/bulk")
def settings_bulk(payload: SettingsBulk):
    updated = 0
    for key, value in payload.settings.items():
        updated += update_document("setting", {"key": key}, {"value": value}).modified_count
    return redirect("/admin/settings", "Settings updated successfully.", count=updated)


@router.put("/settings/{setting_id}")
def settings_update(setting_id: str, payload: SettingUpdate):
    setting = find_or_404(db["setting"], setting_id, "Setting")
    update_document("setting", {"_id": setting["_id"]}, payload.model_dump())
    logger.info("Setting %s updated", setting["key"])
    return redirect(f"/admin/settings?group={payload.group}", "Setting updated successfully.")


@router.delete("/settings/{setting_id}")
def settings_destroy(setting_id: str):
    setting = find_or_404(db["setting"], setting_id, "Setting")
    db["setting"].delete_one({"_id": setting["_id"]})
    return redirect(f"/admin/settings?group={setting['group']}", "Setting deleted successfully.")
