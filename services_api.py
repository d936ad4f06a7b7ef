import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, field_validator

import assignment
import pricing
import scheduling
from catalog import product_services
from database import db
from helpers import find_or_404, oid

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/services", tags=["services"])


class AvailabilityQuery(BaseModel):
    city_id: str
    area_id: str
    service_ids: List[str] = Field(..., min_length=1)
    service_date: Optional[date] = None
    service_time: Optional[str] = None

    @field_validator("service_date")
    @classmethod
    def not_in_past(cls, v):
        if v is not None and v < date.today():
            raise ValueError("service_date must be today or later")
        return v


class SlotsQuery(BaseModel):
    provider_id: Optional[str] = None
    city_id: str
    area_id: str
    service_date: date
    service_ids: List[str] = Field(default_factory=list)

    @field_validator("service_date")
    @classmethod
    def not_in_past(cls, v):
        if v < date.today():
            raise ValueError("service_date must be today or later")
        return v


class CostQuery(BaseModel):
    service_ids: List[str] = Field(..., min_length=1)
    product_ids: List[str] = Field(..., min_length=1)


def _require_location(city_id: str, area_id: str):
    find_or_404(db["city"], city_id, "City")
    if not db["area"].find_one({"_id": oid(area_id), "city_id": city_id}):
        raise HTTPException(status_code=422, detail="The selected area is invalid.")


@router.get("/product/{product_id}")
def get_product_services(product_id: str):
    product = find_or_404(db["product"], product_id, "Product")
    services = product_services(product)
    category = db["category"].find_one({"_id": oid(product["category_id"])}) if product.get("category_id") else None
    logger.debug("Fetched %d service(s) for product %s", len(services), product_id)
    return {
        "success": True,
        "services": services,
        "product": {"id": product_id, "name": product["name"], "category": category["name"] if category else None},
    }


@router.post("/check-availability")
def check_availability(payload: AvailabilityQuery):
    _require_location(payload.city_id, payload.area_id)
    providers = assignment.get_available_providers(
        payload.city_id, payload.area_id, assignment.DEFAULT_CATEGORY_SLUG, payload.service_ids,
        payload.service_date, payload.service_time,
    )
    return {
        "success": True,
        "available": bool(providers),
        "provider_count": len(providers),
        "providers": [
            {
                "id": str(p["_id"]),
                "name": assignment.display_name(p),
                "rating": p.get("rating"),
                "total_jobs": p.get("total_jobs_completed", 0),
                "service_charge": p.get("service_charge", 0),
            }
            for p in providers[:5]
        ],
    }


@router.post("/available-slots")
def available_slots(payload: SlotsQuery):
    _require_location(payload.city_id, payload.area_id)
    if payload.provider_id:
        provider = find_or_404(db["serviceprovider"], payload.provider_id, "Service provider")
        return {
            "success": True,
            "provider": {"id": payload.provider_id, "name": assignment.display_name(provider)},
            "slots": assignment.time_slots_for(provider, payload.service_date),
        }

    providers = assignment.get_available_providers(
        payload.city_id, payload.area_id, assignment.DEFAULT_CATEGORY_SLUG, payload.service_ids
    )
    found = []
    for provider in providers[:3]:
        slots = assignment.time_slots_for(provider, payload.service_date)
        if slots:
            found.append({
                "provider": {"id": str(provider["_id"]), "name": assignment.display_name(provider), "rating": provider.get("rating")},
                "slots": slots,
            })
    return {"success": True, "available_providers": found}


@router.get("/providers/{provider_id}")
def provider_details(provider_id: str):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    services = []
    for entry in provider.get("services", []):
        service = db["productservice"].find_one({"_id": oid(entry["service_id"])})
        if service:
            services.append({
                "id": entry["service_id"],
                "name": service["name"],
                "type": service.get("type"),
                "experience_level": entry.get("experience_level"),
            })

    def name_of(collection, ref):
        doc = db[collection].find_one({"_id": oid(ref)}) if ref else None
        return doc["name"] if doc else None

    hours = provider.get("working_hours") or scheduling.DEFAULT_WORKING_HOURS
    return {
        "success": True,
        "provider": {
            "id": provider_id,
            "name": assignment.display_name(provider),
            "business_name": provider.get("business_name"),
            "description": provider.get("description"),
            "rating": provider.get("rating"),
            "total_reviews": provider.get("total_reviews", 0),
            "total_jobs_completed": provider.get("total_jobs_completed", 0),
            "service_charge": provider.get("service_charge", 0),
            "location": ", ".join(n for n in (name_of("area", provider.get("area_id")), name_of("city", provider.get("city_id"))) if n),
            "category": name_of("serviceprovidercategory", provider.get("category_id")),
            "working_days": [day for day, window in hours.items() if window.get("available", True)],
            "avg_service_duration": provider.get("avg_service_duration", 60),
            "services": services,
        },
    }


@router.post("/calculate-cost")
def calculate_cost(payload: CostQuery):
    total = 0.0
    details = []
    for service_id in payload.service_ids:
        service = find_or_404(db["productservice"], service_id, "Service")
        for product_id in payload.product_ids:
            product = find_or_404(db["product"], product_id, "Product")
            price = pricing.service_price(service, pricing.find_assignment(product, service_id))
            total += price
            details.append({
                "service_id": service_id,
                "service_name": service["name"],
                "product_id": product_id,
                "price": price,
            })
    return {"success": True, "total_cost": round(total, 2), "details": details}
