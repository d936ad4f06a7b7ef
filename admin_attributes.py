"""
Back-office management of product attributes and the appliance models
products are compatible with.

Attribute values and compatible model ids are embedded on each product; the
helpers at the top validate them for the product forms in admin_catalog.
"""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator

from database import create_document, db, get_documents, paginate, update_document, utcnow
from helpers import contains, find_or_404, oid, redirect, render, serialize, slugify
from schemas import ATTRIBUTE_TYPES, AttributeValue, CompatibleModel, ProductAttribute
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

BOOLEAN_VALUES = ("0", "1", "true", "false", "yes", "no")


class AttributeRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(None, max_length=255)
    type: str = "text"
    is_required: bool = False
    is_filterable: bool = False
    sort_order: int = Field(0, ge=0)

    @model_validator(mode="after")
    def known_type(self):
        if self.type not in ATTRIBUTE_TYPES:
            raise ValueError(f"type must be one of {', '.join(ATTRIBUTE_TYPES)}")
        return self


class CompatibleModelRequest(BaseModel):
    brand_name: str = Field(..., min_length=1, max_length=255)
    model_name: str = Field(..., min_length=1, max_length=255)
    model_code: Optional[str] = Field(None, max_length=255)
    year_from: Optional[int] = Field(None, ge=1900)
    year_to: Optional[int] = Field(None, ge=1900)
    is_active: bool = True

    @model_validator(mode="after")
    def check_years(self):
        latest = date.today().year + 10
        for year in (self.year_from, self.year_to):
            if year is not None and year > latest:
                raise ValueError(f"years cannot be later than {latest}")
        if self.year_from and self.year_to and self.year_to < self.year_from:
            raise ValueError("year_to must not be before year_from")
        return self


class BulkRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    action: str


def check_attribute_values(values: List[AttributeValue]):
    """Every attribute must exist once, carry a value of its type, and required ones must be set."""
    given = set()
    for item in values:
        attribute = db["productattribute"].find_one({"_id": oid(item.attribute_id)})
        if not attribute:
            raise HTTPException(status_code=422, detail="The selected attribute is invalid.")
        if item.attribute_id in given:
            raise HTTPException(status_code=422, detail=f"The {attribute['name']} attribute is set twice.")
        given.add(item.attribute_id)
        if attribute.get("type") == "number":
            try:
                float(item.value)
            except ValueError:
                raise HTTPException(status_code=422, detail=f"{attribute['name']} must be a number.")
        if attribute.get("type") == "boolean" and item.value.strip().lower() not in BOOLEAN_VALUES:
            raise HTTPException(status_code=422, detail=f"{attribute['name']} must be yes or no.")

    for attribute in db["productattribute"].find({"is_required": True}):
        if str(attribute["_id"]) not in given:
            raise HTTPException(status_code=422, detail=f"The {attribute['name']} attribute is required.")


def check_compatible_models(model_ids: List[str]):
    for model_id in model_ids:
        if not db["compatiblemodel"].find_one({"_id": oid(model_id)}):
            raise HTTPException(status_code=422, detail="The selected compatible model is invalid.")


def _attribute_slug(payload: AttributeRequest, exclude_id=None) -> str:
    slug = payload.slug or slugify(payload.name)
    if db["productattribute"].find_one({"slug": slug, "_id": {"$ne": exclude_id}}):
        raise HTTPException(status_code=422, detail="The slug has already been taken.")
    return slug


def _detach_attribute(attribute_id: str):
    db["product"].update_many(
        {"attributes.attribute_id": attribute_id},
        {"$pull": {"attributes": {"attribute_id": attribute_id}}, "$set": {"updated_at": utcnow()}},
    )


def _brand_names() -> List[str]:
    return sorted(db["compatiblemodel"].distinct("brand_name"))


# ------------------------------------------------------------------ attributes

@router.get("/product-attributes")
def attributes_index(search: Optional[str] = None, kind: Optional[str] = Query(None, alias="type"), page: int = 1):
    flt = {}
    if search:
        flt["name"] = contains(search)
    if kind:
        flt["type"] = kind

    def transform(doc):
        row = serialize(doc)
        row["values_count"] = db["product"].count_documents({"attributes.attribute_id": row["id"]})
        return row

    return render(
        "Admin/ProductAttributes/Index",
        attributes=paginate("productattribute", flt, page, 20, sort=[("sort_order", 1), ("name", 1)], transform=transform),
        filters={"search": search, "type": kind},
        attribute_types=list(ATTRIBUTE_TYPES),
    )


@router.post("/product-attributes")
def attributes_store(payload: AttributeRequest):
    values = payload.model_dump()
    values["slug"] = _attribute_slug(payload)
    attribute_id = create_document("productattribute", ProductAttribute(**values))
    return redirect("/admin/product-attributes", "Product attribute created successfully.", id=attribute_id)


@router.get("/product-attributes/{attribute_id}")
def attributes_show(attribute_id: str):
    attribute = find_or_404(db["productattribute"], attribute_id, "Product attribute")
    products = [
        {"id": str(p["_id"]), "name": p["name"],
         "value": next(a["value"] for a in p["attributes"] if a["attribute_id"] == attribute_id)}
        for p in db["product"].find({"attributes.attribute_id": attribute_id})
    ]
    return render("Admin/ProductAttributes/Show", attribute=serialize(attribute), products=products)


@router.put("/product-attributes/{attribute_id}")
def attributes_update(attribute_id: str, payload: AttributeRequest):
    attribute = find_or_404(db["productattribute"], attribute_id, "Product attribute")
    values = payload.model_dump()
    values["slug"] = _attribute_slug(payload, attribute["_id"])
    update_document("productattribute", {"_id": attribute["_id"]}, values)
    return redirect("/admin/product-attributes", "Product attribute updated successfully.")


@router.delete("/product-attributes/{attribute_id}")
def attributes_destroy(attribute_id: str):
    attribute = find_or_404(db["productattribute"], attribute_id, "Product attribute")
    _detach_attribute(attribute_id)
    db["productattribute"].delete_one({"_id": attribute["_id"]})
    logger.info("Product attribute %s deleted", attribute.get("slug"))
    return redirect("/admin/product-attributes", "Product attribute deleted successfully.")


@router.post("/product-attributes/bulk")
def attributes_bulk(payload: BulkRequest):
    if payload.action != "delete":
        raise HTTPException(status_code=422, detail="Unknown bulk action.")
    attributes = [find_or_404(db["productattribute"], i, "Product attribute") for i in payload.ids]
    for attribute in attributes:
        _detach_attribute(str(attribute["_id"]))
        db["productattribute"].delete_one({"_id": attribute["_id"]})
    count = len(attributes)
    return redirect("/admin/product-attributes", "Product attributes deleted successfully.", count=count)


# ------------------------------------------------------------------ compatible models

@router.get("/compatible-models")
def models_index(search: Optional[str] = None, brand_name: Optional[str] = None, is_active: Optional[bool] = None,
                 page: int = 1):
    flt = {}
    if search:
        flt["$or"] = [{"brand_name": contains(search)}, {"model_name": contains(search)}, {"model_code": contains(search)}]
    if brand_name:
        flt["brand_name"] = brand_name
    if is_active is not None:
        flt["is_active"] = is_active

    def transform(doc):
        row = serialize(doc)
        row["products_count"] = db["product"].count_documents({"compatible_model_ids": row["id"]})
        return row

    return render(
        "Admin/CompatibleModels/Index",
        models=paginate("compatiblemodel", flt, page, 20, sort=[("brand_name", 1), ("model_name", 1)], transform=transform),
        brands=_brand_names(),
        filters={"search": search, "brand_name": brand_name, "is_active": is_active},
    )


@router.post("/compatible-models")
def models_store(payload: CompatibleModelRequest):
    model_id = create_document("compatiblemodel", CompatibleModel(**payload.model_dump()))
    return redirect("/admin/compatible-models", "Compatible model created successfully.", id=model_id)


@router.get("/compatible-models/by-brand/{brand_name}")
def models_by_brand(brand_name: str):
    models = get_documents("compatiblemodel", {"brand_name": brand_name, "is_active": True}, sort=[("model_name", 1)])
    return {"models": [serialize(m) for m in models]}


@router.get("/compatible-models/{model_id}")
def models_show(model_id: str):
    model = find_or_404(db["compatiblemodel"], model_id, "Compatible model")
    products = [serialize(p) for p in db["product"].find({"compatible_model_ids": model_id})]
    return render("Admin/CompatibleModels/Show", model=serialize(model), products=products)


@router.put("/compatible-models/{model_id}")
def models_update(model_id: str, payload: CompatibleModelRequest):
    model = find_or_404(db["compatiblemodel"], model_id, "Compatible model")
    update_document("compatiblemodel", {"_id": model["_id"]}, payload.model_dump())
    return redirect("/admin/compatible-models", "Compatible model updated successfully.")


@router.delete("/compatible-models/{model_id}")
def models_destroy(model_id: str):
    model = find_or_404(db["compatiblemodel"], model_id, "Compatible model")
    if db["product"].count_documents({"compatible_model_ids": model_id}) > 0:
        raise HTTPException(status_code=400, detail="Cannot delete model with associated products.")
    db["compatiblemodel"].delete_one({"_id": model["_id"]})
    return redirect("/admin/compatible-models", "Compatible model deleted successfully.")


@router.post("/compatible-models/bulk")
def models_bulk(payload: BulkRequest):
    models = [find_or_404(db["compatiblemodel"], i, "Compatible model") for i in payload.ids]
    if payload.action in ("activate", "deactivate"):
        for model in models:
            update_document("compatiblemodel", {"_id": model["_id"]}, {"is_active": payload.action == "activate"})
        return redirect("/admin/compatible-models", f"{len(models)} models {payload.action}d successfully.")
    if payload.action == "delete":
        deleted = skipped = 0
        for model in models:
            if db["product"].count_documents({"compatible_model_ids": str(model["_id"])}) > 0:
                skipped += 1
                continue
            db["compatiblemodel"].delete_one({"_id": model["_id"]})
            deleted += 1
        return redirect("/admin/compatible-models", f"{deleted} models deleted.", deleted=deleted, skipped=skipped)
    raise HTTPException(status_code=422, detail="Unknown bulk action.")
