"""
Back-office catalog management: brands, categories, products and the add-on
services sold with them.
"""

import logging
import secrets
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator

import pricing
from admin_attributes import check_attribute_values, check_compatible_models
from catalog import compatible_models, product_attributes
from database import create_document, db, get_documents, paginate, update_document, utcnow
from helpers import contains, find_or_404, oid, redirect, render, serialize, slugify
from schemas import AttributeValue, Brand, Category, Product, ProductService, ServiceAssignment
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

PRODUCT_SORTS = ("name", "price", "stock_quantity", "created_at")
BARCODE_PREFIX = "RB"

PRODUCT_BULK_ACTIONS = {
    "activate": {"status": "active"},
    "deactivate": {"status": "inactive"},
    "feature": {"is_featured": True},
    "unfeature": {"is_featured": False},
}


class TaxonomyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = None
    description: Optional[str] = None
    website: Optional[str] = None
    parent_id: Optional[str] = None
    is_active: bool = True
    sort_order: int = Field(0, ge=0)


class BulkRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    action: str


class ProductRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = None
    sku: str = Field(..., min_length=1)
    barcode: Optional[str] = None
    short_description: Optional[str] = Field(None, max_length=500)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    cost_price: Optional[float] = Field(None, ge=0)
    stock_quantity: int = Field(..., ge=0)
    manage_stock: bool = True
    low_stock_threshold: int = Field(5, ge=0)
    status: str = Field("active", pattern="^(active|inactive|draft)$")
    is_featured: bool = False
    brand_id: str
    category_id: str
    image: Optional[str] = None
    services: List[ServiceAssignment] = Field(default_factory=list)
    attributes: List[AttributeValue] = Field(default_factory=list)
    compatible_model_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def sale_below_price(self):
        if self.sale_price is not None and self.sale_price >= self.price:
            raise ValueError("sale_price must be less than price")
        return self


class StockUpdate(BaseModel):
    stock_quantity: int = Field(..., ge=0)


class ServicesUpdate(BaseModel):
    services: List[ServiceAssignment] = Field(default_factory=list)


class ProductServiceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = None
    description: Optional[str] = None
    type: str = "installation"
    price: float = Field(0, ge=0)
    is_optional: bool = True
    is_free: bool = False
    is_active: bool = True
    sort_order: int = Field(0, ge=0)


def unique_slug(collection: str, value: str, exclude_id=None) -> str:
    base = slugify(value) or "item"
    slug, counter = base, 1
    while db[collection].find_one({"slug": slug, "_id": {"$ne": exclude_id}}):
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def resolve_slug(collection: str, requested: Optional[str], name: str, exclude_id=None) -> str:
    if not requested:
        return unique_slug(collection, name, exclude_id)
    if db[collection].find_one({"slug": requested, "_id": {"$ne": exclude_id}}):
        raise HTTPException(status_code=422, detail="The slug has already been taken.")
    return requested


def new_barcode() -> str:
    """A random shop barcode no other product carries."""
    while True:
        barcode = f"{BARCODE_PREFIX}{secrets.randbelow(10 ** 8):08d}"
        if not db["product"].find_one({"barcode": barcode}):
            return barcode


def _exists(collection: str, ref_id: Optional[str], label: str):
    if ref_id and not db[collection].find_one({"_id": oid(ref_id)}):
        raise HTTPException(status_code=422, detail=f"The selected {label} is invalid.")


def _check_parent(category_id: Optional[str], parent_id: Optional[str]):
    """Reject a parent that is the category itself or sits anywhere below it."""
    _exists("category", parent_id, "parent category")
    seen = set()
    current = parent_id
    while current and current not in seen:
        if current == category_id:
            raise HTTPException(status_code=422, detail="A category cannot be nested under itself or one of its subcategories.")
        seen.add(current)
        parent = db["category"].find_one({"_id": oid(current)}, {"parent_id": 1})
        current = parent.get("parent_id") if parent else None


def _check_assignments(assignments: List[ServiceAssignment]):
    seen = set()
    for a in assignments:
        _exists("productservice", a.service_id, "service")
        if a.service_id in seen:
            raise HTTPException(status_code=422, detail="A service can only be assigned once per product.")
        seen.add(a.service_id)


# ------------------------------------------------------------------ taxonomies

def _taxonomy_row(collection: str):
    def transform(doc):
        row = serialize(doc)
        row["products_count"] = db["product"].count_documents({f"{collection}_id": row["id"]})
        return row
    return transform


def _taxonomy_doc(collection: str, payload: TaxonomyRequest, slug: str) -> dict:
    if collection == "category":
        return Category(name=payload.name, slug=slug, description=payload.description, parent_id=payload.parent_id,
                        is_active=payload.is_active, sort_order=payload.sort_order).model_dump()
    return Brand(name=payload.name, slug=slug, description=payload.description, website=payload.website,
                 is_active=payload.is_active, sort_order=payload.sort_order).model_dump()


def _delete_taxonomy(collection: str, doc: dict):
    if db["product"].count_documents({f"{collection}_id": str(doc["_id"])}) > 0:
        raise HTTPException(status_code=400, detail=f"Cannot delete {collection} with existing products.")
    if collection == "category" and db["category"].count_documents({"parent_id": str(doc["_id"])}) > 0:
        raise HTTPException(status_code=400, detail="Cannot delete category with subcategories.")
    db[collection].delete_one({"_id": doc["_id"]})


def _taxonomy_routes(collection: str, plural: str, label: str):
    component = "Brands" if collection == "brand" else "Categories"

    def index(search: Optional[str] = None, status: Optional[str] = None, page: int = 1):
        flt = {}
        if search:
            flt["name"] = contains(search)
        if status in ("active", "inactive"):
            flt["is_active"] = status == "active"
        rows = paginate(collection, flt, page, 20, sort=[("sort_order", 1), ("name", 1)], transform=_taxonomy_row(collection))
        return render(f"Admin/{component}/Index", **{plural: rows, "filters": {"search": search, "status": status}})

    def store(payload: TaxonomyRequest):
        if collection == "category":
            _check_parent(None, payload.parent_id)
        slug = resolve_slug(collection, payload.slug, payload.name)
        new_id = create_document(collection, _taxonomy_doc(collection, payload, slug))
        return redirect(f"/admin/{plural}", f"{label.capitalize()} created successfully.", id=new_id)

    def show(item_id: str):
        doc = find_or_404(db[collection], item_id, label.capitalize())
        products = get_documents("product", {f"{collection}_id": item_id}, limit=10, sort=[("created_at", -1)])
        props = {label: _taxonomy_row(collection)(doc), "products": [serialize(p) for p in products]}
        if collection == "category":
            props["children"] = [serialize(c) for c in db["category"].find({"parent_id": item_id})]
        return render(f"Admin/{component}/Show", **props)

    def update(item_id: str, payload: TaxonomyRequest):
        doc = find_or_404(db[collection], item_id, label.capitalize())
        if collection == "category":
            _check_parent(item_id, payload.parent_id)
        slug = resolve_slug(collection, payload.slug, payload.name, doc["_id"])
        values = _taxonomy_doc(collection, payload, slug)
        update_document(collection, {"_id": doc["_id"]}, values)
        return redirect(f"/admin/{plural}", f"{label.capitalize()} updated successfully.")

    def destroy(item_id: str):
        doc = find_or_404(db[collection], item_id, label.capitalize())
        _delete_taxonomy(collection, doc)
        return redirect(f"/admin/{plural}", f"{label.capitalize()} deleted successfully.")

    def bulk(payload: BulkRequest):
        docs = [find_or_404(db[collection], i, label.capitalize()) for i in payload.ids]
        if payload.action in ("activate", "deactivate"):
            for doc in docs:
                update_document(collection, {"_id": doc["_id"]}, {"is_active": payload.action == "activate"})
            return redirect(f"/admin/{plural}", f"{len(docs)} {plural} {payload.action}d successfully.")
        if payload.action == "delete":
            deleted, skipped = 0, 0
            for doc in docs:
                try:
                    _delete_taxonomy(collection, doc)
                    deleted += 1
                except HTTPException:
                    skipped += 1
            message = f"{deleted} {plural} deleted successfully."
            if skipped:
                message += f" {skipped} skipped because they are still in use."
            return redirect(f"/admin/{plural}", message, deleted=deleted, skipped=skipped)
        raise HTTPException(status_code=422, detail="Unknown bulk action.")

    router.add_api_route(f"/{plural}", index, methods=["GET"])
    router.add_api_route(f"/{plural}", store, methods=["POST"])
    router.add_api_route(f"/{plural}/bulk", bulk, methods=["POST"])
    router.add_api_route(f"/{plural}/{{item_id}}", show, methods=["GET"])
    router.add_api_route(f"/{plural}/{{item_id}}", update, methods=["PUT"])
    router.add_api_route(f"/{plural}/{{item_id}}", destroy, methods=["DELETE"])


_taxonomy_routes("brand", "brands", "brand")
_taxonomy_routes("category", "categories", "category")


# ------------------------------------------------------------------ products

def _low_stock_ids() -> list:
    return [
        p["_id"] for p in db["product"].find({"manage_stock": True}, {"stock_quantity": 1, "low_stock_threshold": 1})
        if p.get("stock_quantity", 0) <= p.get("low_stock_threshold", 5)
    ]


def _assigned_services(product: dict) -> List[dict]:
    out = []
    for assignment in product.get("services", []):
        service = db["productservice"].find_one({"_id": oid(assignment["service_id"])})
        if not service:
            continue
        row = serialize(service)
        row.update({
            "custom_price": assignment.get("custom_price"),
            "is_mandatory": assignment.get("is_mandatory", False),
            "assignment_is_free": assignment.get("is_free", False),
            "final_price": pricing.service_price(service, assignment),
        })
        out.append(row)
    return out


@router.get("/products")
def products_index(search: Optional[str] = None, brand_id: Optional[str] = None, category_id: Optional[str] = None,
                   status: Optional[str] = None, stock_status: Optional[str] = None, sort: str = "created_at",
                   direction: str = "desc", page: int = 1):
    flt = {}
    if search:
        flt["$or"] = [{"name": contains(search)}, {"sku": contains(search)}, {"barcode": contains(search)}]
    if brand_id:
        flt["brand_id"] = brand_id
    if category_id:
        flt["category_id"] = category_id
    if status:
        flt["status"] = status
    if stock_status == "in_stock":
        flt["in_stock"] = True
    elif stock_status == "out_of_stock":
        flt["in_stock"] = False
    elif stock_status == "low_stock":
        flt["_id"] = {"$in": _low_stock_ids()}

    field = sort if sort in PRODUCT_SORTS else "created_at"
    order = 1 if direction == "asc" else -1
    return render(
        "Admin/Products/Index",
        products=paginate("product", flt, page, 15, sort=[(field, order)], transform=serialize),
        brands=[{"id": str(b["_id"]), "name": b["name"]} for b in get_documents("brand", {"is_active": True}, sort=[("name", 1)])],
        categories=[{"id": str(c["_id"]), "name": c["name"]} for c in get_documents("category", {"is_active": True}, sort=[("name", 1)])],
        filters={"search": search, "brand_id": brand_id, "category_id": category_id, "status": status,
                 "stock_status": stock_status, "sort": field, "direction": direction},
    )


def _product_values(payload: ProductRequest, exclude_id=None) -> dict:
    if db["product"].find_one({"sku": payload.sku, "_id": {"$ne": exclude_id}}):
        raise HTTPException(status_code=422, detail="The sku has already been taken.")
    if payload.barcode and db["product"].find_one({"barcode": payload.barcode, "_id": {"$ne": exclude_id}}):
        raise HTTPException(status_code=422, detail="The barcode has already been taken.")
    _exists("brand", payload.brand_id, "brand")
    _exists("category", payload.category_id, "category")
    _check_assignments(payload.services)
    check_attribute_values(payload.attributes)
    check_compatible_models(payload.compatible_model_ids)

    values = payload.model_dump()
    values["slug"] = resolve_slug("product", payload.slug, payload.name, exclude_id)
    values["in_stock"] = payload.stock_quantity > 0 if payload.manage_stock else True
    values = Product(**values).model_dump()
    # review aggregates are maintained by the reviews module
    del values["average_rating"], values["reviews_count"]
    return values


@router.post("/products")
def products_store(payload: ProductRequest):
    values = _product_values(payload)
    values.update(barcode=values["barcode"] or new_barcode(), average_rating=0, reviews_count=0)
    product_id = create_document("product", values)
    logger.info("Product %s created", payload.sku)
    return redirect("/admin/products", "Product created successfully.", id=product_id)


@router.post("/products/bulk")
def products_bulk(payload: BulkRequest):
    ids = [oid(i) for i in payload.ids]
    if payload.action == "delete":
        result = db["product"].delete_many({"_id": {"$in": ids}})
        db["cart"].delete_many({"product_id": {"$in": payload.ids}})
        for collection in ("wishlist", "productreview"):
            db[collection].delete_many({"product_id": {"$in": payload.ids}})
        return redirect("/admin/products", "Products deleted successfully.", count=result.deleted_count)
    if payload.action not in PRODUCT_BULK_ACTIONS:
        raise HTTPException(status_code=422, detail="Unknown bulk action.")
    values = dict(PRODUCT_BULK_ACTIONS[payload.action], updated_at=utcnow())
    result = db["product"].update_many({"_id": {"$in": ids}}, {"$set": values})
    return redirect("/admin/products", f"Products {payload.action}d successfully.", count=result.modified_count)


@router.get("/products/{product_id}")
def products_show(product_id: str):
    product = find_or_404(db["product"], product_id, "Product")
    row = serialize(product)
    row["final_price"] = pricing.final_price(product)
    row["discount_percentage"] = pricing.discount_percentage(product)
    row["is_low_stock"] = product.get("manage_stock", True) and product.get("stock_quantity", 0) <= product.get("low_stock_threshold", 5)
    return render(
        "Admin/Products/Show",
        product=row,
        services=_assigned_services(product),
        attributes=product_attributes(product),
        compatible_models=[serialize(m) for m in compatible_models(product, active_only=False)],
    )


@router.post("/products/{product_id}/barcode")
def products_barcode(product_id: str):
    product = find_or_404(db["product"], product_id, "Product")
    barcode = new_barcode()
    update_document("product", {"_id": product["_id"]}, {"barcode": barcode})
    logger.info("Product %s barcode regenerated as %s", product.get("sku"), barcode)
    return redirect(f"/admin/products/{product_id}", "Barcode generated successfully.", barcode=barcode)


@router.put("/products/{product_id}")
def products_update(product_id: str, payload: ProductRequest):
    product = find_or_404(db["product"], product_id, "Product")
    values = _product_values(payload, product["_id"])
    values["barcode"] = values["barcode"] or product.get("barcode") or new_barcode()
    update_document("product", {"_id": product["_id"]}, values)
    return redirect(f"/admin/products/{product_id}", "Product updated successfully.")


@router.delete("/products/{product_id}")
def products_destroy(product_id: str):
    product = find_or_404(db["product"], product_id, "Product")
    db["product"].delete_one({"_id": product["_id"]})
    db["cart"].delete_many({"product_id": product_id})
    for collection in ("wishlist", "productreview"):
        db[collection].delete_many({"product_id": product_id})
    logger.info("Product %s deleted", product.get("sku"))
    return redirect("/admin/products", "Product deleted successfully.")


@router.patch("/products/{product_id}/stock")
def products_stock(product_id: str, payload: StockUpdate):
    product = find_or_404(db["product"], product_id, "Product")
    in_stock = payload.stock_quantity > 0 if product.get("manage_stock", True) else True
    update_document("product", {"_id": product["_id"]}, {"stock_quantity": payload.stock_quantity, "in_stock": in_stock})
    return redirect(f"/admin/products/{product_id}", "Stock updated successfully.",
                    stock_quantity=payload.stock_quantity, in_stock=in_stock)


@router.post("/products/{product_id}/duplicate")
def products_duplicate(product_id: str):
    product = find_or_404(db["product"], product_id, "Product")
    stamp = int(time.time())
    copy = {k: v for k, v in product.items() if k not in ("_id", "created_at", "updated_at")}
    copy.update({
        "name": f"{product['name']} (Copy)",
        "sku": f"{product['sku']}-copy-{stamp}",
        "slug": unique_slug("product", f"{product['name']}-{stamp}"),
        "barcode": new_barcode(),
        "status": "draft",
        "is_featured": False,
        "average_rating": 0,
        "reviews_count": 0,
    })
    new_id = create_document("product", copy)
    return redirect(f"/admin/products/{new_id}", "Product duplicated successfully.", id=new_id)


@router.get("/products/{product_id}/services")
def products_services(product_id: str):
    product = find_or_404(db["product"], product_id, "Product")
    assigned = {a["service_id"] for a in product.get("services", [])}
    available = [serialize(s) for s in get_documents("productservice", {"is_active": True}, sort=[("sort_order", 1), ("name", 1)])
                 if str(s["_id"]) not in assigned]
    return render("Admin/Products/Services", product=serialize(product), assigned=_assigned_services(product), available=available)


@router.put("/products/{product_id}/services")
def products_services_update(product_id: str, payload: ServicesUpdate):
    product = find_or_404(db["product"], product_id, "Product")
    _check_assignments(payload.services)
    update_document("product", {"_id": product["_id"]}, {"services": [a.model_dump() for a in payload.services]})
    return redirect(f"/admin/products/{product_id}/services", "Product services updated successfully.")


@router.post("/products/{product_id}/services")
def products_services_assign(product_id: str, payload: ServiceAssignment):
    product = find_or_404(db["product"], product_id, "Product")
    _exists("productservice", payload.service_id, "service")
    services = [a for a in product.get("services", []) if a["service_id"] != payload.service_id]
    services.append(payload.model_dump())
    update_document("product", {"_id": product["_id"]}, {"services": services})
    return {"success": True, "message": "Service assigned successfully.", "services": services}


@router.delete("/products/{product_id}/services/{service_id}")
def products_services_remove(product_id: str, service_id: str):
    product = find_or_404(db["product"], product_id, "Product")
    services = [a for a in product.get("services", []) if a["service_id"] != service_id]
    update_document("product", {"_id": product["_id"]}, {"services": services})
    return redirect(f"/admin/products/{product_id}/services", "Service removed from product.")


# ------------------------------------------------------------------ product services

@router.get("/product-services")
def product_services_index(search: Optional[str] = None, kind: Optional[str] = Query(None, alias="type"), status: Optional[str] = None, page: int = 1):
    flt = {}
    if search:
        flt["name"] = contains(search)
    if kind:
        flt["type"] = kind
    if status in ("active", "inactive"):
        flt["is_active"] = status == "active"

    def transform(doc):
        row = serialize(doc)
        row["products_count"] = db["product"].count_documents({"services.service_id": row["id"]})
        return row

    return render(
        "Admin/ProductServices/Index",
        services=paginate("productservice", flt, page, 20, sort=[("sort_order", 1), ("name", 1)], transform=transform),
        filters={"search": search, "type": kind, "status": status},
    )


@router.post("/product-services")
def product_services_store(payload: ProductServiceRequest):
    values = payload.model_dump()
    values["slug"] = resolve_slug("productservice", payload.slug, payload.name)
    new_id = create_document("productservice", ProductService(**values))
    return redirect("/admin/product-services", "Service created successfully.", id=new_id)


@router.get("/product-services/{service_id}")
def product_services_show(service_id: str):
    service = find_or_404(db["productservice"], service_id, "Service")
    products = [
        {"id": str(p["_id"]), "name": p["name"], "sku": p.get("sku"),
         "final_price": pricing.service_price(service, pricing.find_assignment(p, service_id))}
        for p in db["product"].find({"services.service_id": service_id})
    ]
    return render("Admin/ProductServices/Show", service=serialize(service), products=products)


@router.put("/product-services/{service_id}")
def product_services_update(service_id: str, payload: ProductServiceRequest):
    service = find_or_404(db["productservice"], service_id, "Service")
    values = payload.model_dump()
    values["slug"] = resolve_slug("productservice", payload.slug, payload.name, service["_id"])
    update_document("productservice", {"_id": service["_id"]}, values)
    return redirect("/admin/product-services", "Service updated successfully.")


@router.delete("/product-services/{service_id}")
def product_services_destroy(service_id: str):
    service = find_or_404(db["productservice"], service_id, "Service")
    db["product"].update_many({"services.service_id": service_id}, {"$pull": {"services": {"service_id": service_id}}})
    db["productservice"].delete_one({"_id": service["_id"]})
    return redirect("/admin/product-services", "Service deleted successfully.")


@router.post("/product-services/{service_id}/toggle")
def product_services_toggle(service_id: str):
    service = find_or_404(db["productservice"], service_id, "Service")
    active = not service.get("is_active", True)
    update_document("productservice", {"_id": service["_id"]}, {"is_active": active})
    return redirect("/admin/product-services", f"Service {'activated' if active else 'deactivated'} successfully.", is_active=active)
