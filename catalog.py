from typing import Optional

from fastapi import APIRouter, HTTPException

import pricing
from database import db, get_documents, paginate
from helpers import contains, oid, render

router = APIRouter(tags=["catalog"])

SORTS = {
    "name": [("name", 1)],
    "price_low": [("price", 1)],
    "price_high": [("price", -1)],
    "newest": [("created_at", -1)],
    "oldest": [("created_at", 1)],
    "rating": [("average_rating", -1), ("reviews_count", -1)],
    "popular": [("reviews_count", -1), ("average_rating", -1)],
}

PER_PAGE = 12


def _taxonomy(collection: str, ref_id: Optional[str]) -> Optional[dict]:
    if not ref_id:
        return None
    doc = db[collection].find_one({"_id": oid(ref_id)})
    if not doc:
        return None
    return {"id": str(doc["_id"]), "name": doc["name"], "slug": doc["slug"]}


def product_card(product: dict) -> dict:
    return {
        "id": str(product["_id"]),
        "name": product["name"],
        "slug": product["slug"],
        "sku": product.get("sku"),
        "price": float(product.get("price", 0)),
        "sale_price": product.get("sale_price"),
        "final_price": pricing.final_price(product),
        "discount_percentage": pricing.discount_percentage(product),
        "image": product.get("image") or "products/placeholder-product.jpg",
        "brand": _taxonomy("brand", product.get("brand_id")),
        "category": _taxonomy("category", product.get("category_id")),
        "in_stock": product.get("in_stock", True),
        "stock_quantity": product.get("stock_quantity", 0),
        "is_featured": product.get("is_featured", False),
        "rating": product.get("average_rating", 0),
        "reviews_count": product.get("reviews_count", 0),
    }


def product_services(product: dict) -> list:
    """Active services offered with a product, priced for it."""
    out = []
    for assignment in product.get("services", []):
        service = db["productservice"].find_one({"_id": oid(assignment["service_id"]), "is_active": True})
        if not service:
            continue
        out.append({
            "id": str(service["_id"]),
            "name": service["name"],
            "slug": service.get("slug"),
            "description": service.get("description"),
            "type": service.get("type"),
            "price": pricing.service_price(service, assignment),
            "is_free": pricing.service_price(service, assignment) == 0,
            "is_mandatory": pricing.is_mandatory(service, assignment),
            "sort_order": service.get("sort_order", 0),
        })
    out.sort(key=lambda s: (s["sort_order"], s["name"]))
    return out


def product_attributes(product: dict) -> list:
    out = []
    for item in product.get("attributes", []):
        attribute = db["productattribute"].find_one({"_id": oid(item["attribute_id"])})
        if attribute:
            out.append({"name": attribute["name"], "slug": attribute["slug"], "type": attribute.get("type"),
                        "value": item["value"], "sort_order": attribute.get("sort_order", 0)})
    out.sort(key=lambda a: (a["sort_order"], a["name"]))
    return out


def compatible_models(product: dict, active_only: bool = True) -> list:
    ids = [oid(i) for i in product.get("compatible_model_ids", [])]
    flt = {"_id": {"$in": ids}}
    if active_only:
        flt["is_active"] = True
    return get_documents("compatiblemodel", flt, sort=[("brand_name", 1), ("model_name", 1)])


def _models_by_brand(models: list) -> list:
    grouped = {}
    for model in models:
        grouped.setdefault(model["brand_name"], []).append({
            "id": str(model["_id"]),
            "model_name": model["model_name"],
            "model_code": model.get("model_code"),
            "year_from": model.get("year_from"),
            "year_to": model.get("year_to"),
        })
    return [{"brand": brand, "models": rows} for brand, rows in grouped.items()]


def _published_reviews(product: dict) -> list:
    rows = []
    for review in get_documents("productreview", {"product_id": str(product["_id"]), "is_approved": True},
                                sort=[("created_at", -1)]):
        user = db["user"].find_one({"_id": oid(review["user_id"])}) or {}
        name = user.get("first_name", "Customer")
        if user.get("last_name"):
            name = f"{name} {user['last_name'][0]}."
        rows.append({
            "id": str(review["_id"]),
            "rating": review["rating"],
            "title": review.get("title"),
            "comment": review.get("comment"),
            "user_name": name,
            "created_at": review["created_at"].isoformat(),
        })
    return rows


def _active_taxonomy(collection: str) -> list:
    rows = []
    for doc in get_documents(collection, {"is_active": True}, sort=[("sort_order", 1), ("name", 1)]):
        count = db["product"].count_documents({f"{collection}_id": str(doc["_id"]), "status": "active"})
        rows.append({"id": str(doc["_id"]), "name": doc["name"], "slug": doc["slug"], "products_count": count})
    return rows


def _ids_matching(collection: str, term: str) -> list:
    return [str(d["_id"]) for d in db[collection].find({"name": contains(term)}, {"_id": 1})]


@router.get("/")
def home():
    featured = get_documents("product", {"status": "active", "is_featured": True, "in_stock": True}, limit=8, sort=[("created_at", -1)])
    latest = get_documents("product", {"status": "active", "in_stock": True}, limit=8, sort=[("created_at", -1)])
    return render(
        "Home",
        featuredProducts=[product_card(p) for p in featured],
        latestProducts=[product_card(p) for p in latest],
        categories=_active_taxonomy("category"),
        brands=_active_taxonomy("brand"),
    )


@router.get("/products")
def products(search: Optional[str] = None, brand: Optional[str] = None, category: Optional[str] = None,
             min_price: Optional[float] = None, max_price: Optional[float] = None, featured: bool = False,
             sort: str = "name", page: int = 1):
    flt = {"status": "active", "in_stock": True}
    if search:
        flt["$or"] = [
            {"name": contains(search)},
            {"sku": contains(search)},
            {"description": contains(search)},
            {"brand_id": {"$in": _ids_matching("brand", search)}},
            {"category_id": {"$in": _ids_matching("category", search)}},
        ]
    for key, slug in (("brand", brand), ("category", category)):
        if slug:
            doc = db[key].find_one({"slug": slug})
            if doc is None:
                # unknown slug matches nothing
                flt["_id"] = {"$in": []}
            else:
                flt[f"{key}_id"] = str(doc["_id"])
    price = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        flt["price"] = price
    if featured:
        flt["is_featured"] = True

    page_data = paginate("product", flt, page, PER_PAGE, sort=SORTS.get(sort, SORTS["name"]), transform=product_card)
    return render(
        "Products/Index",
        products=page_data,
        brands=_active_taxonomy("brand"),
        categories=_active_taxonomy("category"),
        filters={"search": search, "brand": brand, "category": category, "min_price": min_price,
                 "max_price": max_price, "featured": featured, "sort": sort},
    )


@router.get("/products/{slug}")
def product_show(slug: str):
    product = db["product"].find_one({"slug": slug, "status": "active"})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    related = []
    if product.get("category_id"):
        related = get_documents(
            "product",
            {"category_id": product["category_id"], "status": "active", "_id": {"$ne": product["_id"]}},
            limit=4,
        )
    detail = product_card(product)
    detail.update({
        "description": product.get("description"),
        "short_description": product.get("short_description"),
        "barcode": product.get("barcode"),
        "low_stock_threshold": product.get("low_stock_threshold", 5),
        "attributes": product_attributes(product),
        "compatible_models": _models_by_brand(compatible_models(product)),
    })
    reviews = _published_reviews(product)
    return render(
        "Products/Show",
        product=detail,
        services=product_services(product),
        reviews=reviews,
        ratingDistribution={star: sum(1 for r in reviews if r["rating"] == star) for star in range(5, 0, -1)},
        relatedProducts=[product_card(p) for p in related],
    )


@router.get("/categories")
def categories():
    return render("Categories/Index", categories=_active_taxonomy("category"))


@router.get("/brands")
def brands():
    return render("Brands/Index", brands=_active_taxonomy("brand"))
