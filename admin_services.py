"""
Back-office management of service providers, their calendars and the
locations and categories they are organised by.
"""

import logging
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field, model_validator

import assignment
import scheduling
from database import Transaction, create_document, db, get_documents, paginate, update_document, utcnow
from helpers import contains, find_or_404, oid, redirect, render, serialize, slugify
from schemas import (PROVIDER_STATUSES, SCHEDULE_STATUSES, Area, City, ProviderService, ServiceProvider,
                     ServiceProviderCategory)
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

REGIONS = ("England", "Scotland", "Wales", "Northern Ireland")


class ProviderRequest(BaseModel):
    user_id: str
    category_id: Optional[str] = None
    new_category_name: Optional[str] = Field(None, max_length=255)
    city_id: Optional[str] = None
    new_city_name: Optional[str] = Field(None, max_length=255)
    new_city_region: Optional[str] = None
    new_city_county: Optional[str] = Field(None, max_length=255)
    area_id: Optional[str] = None
    new_area_name: Optional[str] = Field(None, max_length=255)
    new_area_postcode: Optional[str] = Field(None, max_length=20)

    business_name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    service_charge: float = Field(..., ge=0)
    contact_number: Optional[str] = Field(None, max_length=255)
    email: Optional[EmailStr] = None
    availability_status: str = "available"
    max_daily_orders: int = Field(5, ge=1, le=50)
    is_active: bool = True
    is_verified: bool = False
    avg_service_duration: int = Field(60, ge=1)
    min_advance_booking_hours: int = Field(24, ge=0)

    @model_validator(mode="after")
    def check(self):
        if not self.category_id and not self.new_category_name:
            raise ValueError("category_id or new_category_name is required")
        if not self.city_id and not self.new_city_name:
            raise ValueError("city_id or new_city_name is required")
        if not self.area_id and not self.new_area_name:
            raise ValueError("area_id or new_area_name is required")
        if self.new_city_name and self.new_city_region not in REGIONS:
            raise ValueError(f"new_city_region must be one of {', '.join(REGIONS)}")
        if self.availability_status not in PROVIDER_STATUSES:
            raise ValueError(f"availability_status must be one of {', '.join(PROVIDER_STATUSES)}")
        return self


class ProviderBulk(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    action: str


class WorkingHoursUpdate(BaseModel):
    working_hours: Dict[str, Dict]


class ProviderServicesUpdate(BaseModel):
    services: List[ProviderService] = Field(default_factory=list)


class ScheduleStatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = None

    @model_validator(mode="after")
    def known_status(self):
        if self.status not in SCHEDULE_STATUSES:
            raise ValueError(f"status must be one of {', '.join(SCHEDULE_STATUSES)}")
        return self


class RatingRequest(BaseModel):
    rating: float = Field(..., ge=1, le=5)


class CityRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    region: Optional[str] = None
    county: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class AreaRequest(BaseModel):
    city_id: str
    name: str = Field(..., min_length=1, max_length=255)
    postcode: Optional[str] = Field(None, max_length=20)
    is_active: bool = True
    sort_order: int = 0


class CategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    is_active: bool = True
    sort_order: int = 0


def provider_row(provider: dict) -> dict:
    row = serialize(provider)
    row["name"] = assignment.display_name(provider)
    for key, collection in (("category", "serviceprovidercategory"), ("city", "city"), ("area", "area")):
        ref = provider.get(f"{key}_id")
        doc = db[collection].find_one({"_id": oid(ref)}) if ref else None
        row[key] = doc["name"] if doc else None
    return row


def _resolve_locations(tx: Transaction, payload: ProviderRequest) -> dict:
    """Ids for category, city and area, creating any given by name."""
    category_id = payload.category_id
    if payload.new_category_name:
        category_id = tx.create_document("serviceprovidercategory", ServiceProviderCategory(
            name=payload.new_category_name, slug=slugify(payload.new_category_name)))
    elif not db["serviceprovidercategory"].find_one({"_id": oid(category_id)}):
        raise HTTPException(status_code=422, detail="The selected category is invalid.")

    city_id = payload.city_id
    if payload.new_city_name:
        city_id = tx.create_document("city", City(
            name=payload.new_city_name, slug=slugify(payload.new_city_name),
            region=payload.new_city_region, county=payload.new_city_county))
    elif not db["city"].find_one({"_id": oid(city_id)}):
        raise HTTPException(status_code=422, detail="The selected city is invalid.")

    area_id = payload.area_id
    if payload.new_area_name:
        area_id = tx.create_document("area", Area(
            city_id=city_id, name=payload.new_area_name, slug=slugify(payload.new_area_name),
            postcode=payload.new_area_postcode))
    elif not db["area"].find_one({"_id": oid(area_id), "city_id": city_id}):
        raise HTTPException(status_code=422, detail="The selected area is invalid.")

    return {"category_id": category_id, "city_id": city_id, "area_id": area_id}


def _provider_values(payload: ProviderRequest) -> dict:
    return payload.model_dump(exclude={
        "category_id", "city_id", "area_id", "new_category_name", "new_city_name", "new_city_region",
        "new_city_county", "new_area_name", "new_area_postcode",
    })


def _free_daily_slot(tx: Transaction, provider_id: str):
    provider = tx.increment("serviceprovider", {"_id": oid(provider_id), "current_daily_orders": {"$gt": 0}}, "current_daily_orders", -1)
    if provider is not None and provider.get("availability_status") == "busy":
        tx.update_one("serviceprovider", {"_id": provider["_id"]}, {"availability_status": "available"})


def _remove_providers(tx: Transaction, provider_ids: List[str]) -> int:
    """Cancel the providers' upcoming bookings, detach their orders and delete them."""
    bookings = list(db["serviceproviderschedule"].find({"service_provider_id": {"$in": provider_ids}, "status": "scheduled"}))
    orders = list(db["order"].find({"service_provider_id": {"$in": provider_ids},
                                    "service_provider_status": {"$nin": ["completed", "cancelled"]}}))
    for booking in bookings:
        tx.update_one("serviceproviderschedule", {"_id": booking["_id"]}, {"status": "cancelled"})
    for order in orders:
        tx.update_one("order", {"_id": order["_id"]}, {"service_provider_status": "cancelled"})
    return tx.delete_many("serviceprovider", {"_id": {"$in": [oid(i) for i in provider_ids]}})


# ------------------------------------------------------------------ providers

@router.get("/service-management")
def providers_index(search: Optional[str] = None, category_id: Optional[str] = None, city_id: Optional[str] = None,
                    status: Optional[str] = None, availability: Optional[str] = None, page: int = 1):
    flt = {}
    if search:
        users = [str(u["_id"]) for u in db["user"].find({"$or": [
            {"first_name": contains(search)}, {"last_name": contains(search)}, {"email": contains(search)},
        ]}, {"_id": 1})]
        flt["$or"] = [
            {"business_name": contains(search)},
            {"contact_number": contains(search)},
            {"email": contains(search)},
            {"user_id": {"$in": users}},
        ]
    if category_id:
        flt["category_id"] = category_id
    if city_id:
        flt["city_id"] = city_id
    if status == "active":
        flt["is_active"] = True
    elif status == "inactive":
        flt["is_active"] = False
    elif status == "verified":
        flt["is_verified"] = True
    elif status == "unverified":
        flt["is_verified"] = False
    if availability:
        flt["availability_status"] = availability

    return render(
        "Admin/ServiceManagement/Index",
        providers=paginate("serviceprovider", flt, page, 15, sort=[("created_at", -1)], transform=provider_row),
        categories=[serialize(c) for c in get_documents("serviceprovidercategory", {"is_active": True}, sort=[("name", 1)])],
        cities=[serialize(c) for c in get_documents("city", {"is_active": True}, sort=[("name", 1)])],
        filters={"search": search, "category_id": category_id, "city_id": city_id, "status": status,
                 "availability": availability},
    )


@router.post("/service-management")
def providers_store(payload: ProviderRequest):
    find_or_404(db["user"], payload.user_id, "User")
    if db["serviceprovider"].find_one({"user_id": payload.user_id}):
        raise HTTPException(status_code=422, detail="This user is already a service provider.")

    with Transaction("create provider") as tx:
        values = _provider_values(payload)
        values.update(_resolve_locations(tx, payload))
        values.update(availability_status="available", current_daily_orders=0)
        if payload.is_verified:
            values["verified_at"] = utcnow()
        provider_id = tx.create_document("serviceprovider", ServiceProvider(**values))

    logger.info("Service provider %s created for user %s", provider_id, payload.user_id)
    return redirect("/admin/service-management", "Service provider created successfully.", id=provider_id)


@router.post("/service-management/bulk")
def providers_bulk(payload: ProviderBulk):
    ids = [oid(i) for i in payload.ids]
    if payload.action == "delete":
        with Transaction("delete providers") as tx:
            count = _remove_providers(tx, payload.ids)
        logger.info("Deleted %d service provider(s)", count)
    elif payload.action in ("activate", "deactivate"):
        values = {"is_active": payload.action == "activate", "updated_at": utcnow()}
        count = db["serviceprovider"].update_many({"_id": {"$in": ids}}, {"$set": values}).modified_count
    elif payload.action == "verify":
        values = {"is_verified": True, "verified_at": utcnow(), "updated_at": utcnow()}
        count = db["serviceprovider"].update_many({"_id": {"$in": ids}}, {"$set": values}).modified_count
    else:
        raise HTTPException(status_code=422, detail="Unknown bulk action.")
    return redirect("/admin/service-management", f"Bulk {payload.action} applied to {count} provider(s).", count=count)


@router.patch("/service-management/schedules/{schedule_id}/status")
def schedule_status(schedule_id: str, payload: ScheduleStatusUpdate):
    booking = find_or_404(db["serviceproviderschedule"], schedule_id, "Schedule")
    previous = booking.get("status")
    active = previous in scheduling.ACTIVE_BOOKING_STATUSES
    if not active and payload.status != previous:
        raise HTTPException(status_code=422, detail=f"A {previous} booking cannot be changed.")
    values = {"status": payload.status}
    if payload.notes is not None:
        values["notes"] = payload.notes

    with Transaction("schedule status") as tx:
        tx.update_one("serviceproviderschedule", {"_id": booking["_id"]}, values)
        if active and payload.status in ("completed", "cancelled"):
            _free_daily_slot(tx, booking["service_provider_id"])
            if payload.status == "completed":
                tx.increment("serviceprovider", {"_id": oid(booking["service_provider_id"])}, "total_jobs_completed", 1)
        if booking.get("order_id") and payload.status != previous:
            tx.update_one("order", {"_id": oid(booking["order_id"])}, {"service_provider_status": payload.status})

    return redirect(f"/admin/service-management/{booking['service_provider_id']}/schedule", "Schedule updated successfully.")


@router.get("/service-management/{provider_id}")
def providers_show(provider_id: str):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    today = date.today().isoformat()
    upcoming = get_documents("serviceproviderschedule", {"service_provider_id": provider_id, "service_date": {"$gte": today}},
                             limit=20, sort=[("service_date", 1), ("start_time", 1)])
    orders = get_documents("order", {"service_provider_id": provider_id}, limit=10, sort=[("created_at", -1)])
    services = []
    for entry in provider.get("services", []):
        service = db["productservice"].find_one({"_id": oid(entry["service_id"])})
        if service:
            services.append(dict(entry, name=service["name"], type=service.get("type")))
    return render(
        "Admin/ServiceManagement/Show",
        provider=provider_row(provider),
        services=services,
        working_hours=provider.get("working_hours") or scheduling.DEFAULT_WORKING_HOURS,
        upcoming=[serialize(b) for b in upcoming],
        orders=[serialize(o) for o in orders],
    )


@router.put("/service-management/{provider_id}")
def providers_update(provider_id: str, payload: ProviderRequest):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    find_or_404(db["user"], payload.user_id, "User")
    if db["serviceprovider"].find_one({"user_id": payload.user_id, "_id": {"$ne": provider["_id"]}}):
        raise HTTPException(status_code=422, detail="This user is already a service provider.")

    with Transaction("update provider") as tx:
        values = _provider_values(payload)
        values.update(_resolve_locations(tx, payload))
        if payload.is_verified and not provider.get("is_verified"):
            values["verified_at"] = utcnow()
        elif not payload.is_verified:
            values["verified_at"] = None
        tx.update_one("serviceprovider", {"_id": provider["_id"]}, values)

    return redirect(f"/admin/service-management/{provider_id}", "Service provider updated successfully.")


@router.delete("/service-management/{provider_id}")
def providers_destroy(provider_id: str):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    with Transaction("delete provider") as tx:
        _remove_providers(tx, [str(provider["_id"])])
    logger.info("Deleted service provider %s", provider_id)
    return redirect("/admin/service-management", "Service provider deleted successfully.")


@router.post("/service-management/{provider_id}/toggle")
def providers_toggle(provider_id: str):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    active = not provider.get("is_active", True)
    update_document("serviceprovider", {"_id": provider["_id"]}, {"is_active": active})
    return redirect("/admin/service-management", f"Service provider {'activated' if active else 'deactivated'} successfully.",
                    is_active=active)


@router.post("/service-management/{provider_id}/verify")
def providers_verify(provider_id: str):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    update_document("serviceprovider", {"_id": provider["_id"]}, {"is_verified": True, "verified_at": utcnow()})
    return redirect("/admin/service-management", "Service provider verified successfully.")


@router.post("/service-management/{provider_id}/reset-daily-orders")
def providers_reset(provider_id: str):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    values = {"current_daily_orders": 0}
    if provider.get("availability_status") == "busy":
        values["availability_status"] = "available"
    update_document("serviceprovider", {"_id": provider["_id"]}, values)
    return redirect("/admin/service-management", "Daily orders reset successfully.")


@router.put("/service-management/{provider_id}/working-hours")
def providers_working_hours(provider_id: str, payload: WorkingHoursUpdate):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    try:
        hours = scheduling.validate_working_hours(payload.working_hours)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    update_document("serviceprovider", {"_id": provider["_id"]}, {"working_hours": hours})
    return redirect(f"/admin/service-management/{provider_id}", "Working hours updated successfully.", working_hours=hours)


@router.put("/service-management/{provider_id}/services")
def providers_services(provider_id: str, payload: ProviderServicesUpdate):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    seen = set()
    for entry in payload.services:
        if entry.service_id in seen or not db["productservice"].find_one({"_id": oid(entry.service_id)}):
            raise HTTPException(status_code=422, detail="The selected services are invalid.")
        seen.add(entry.service_id)
    update_document("serviceprovider", {"_id": provider["_id"]}, {"services": [s.model_dump() for s in payload.services]})
    return redirect(f"/admin/service-management/{provider_id}", "Provider services updated successfully.")


@router.get("/service-management/{provider_id}/schedule")
def providers_schedule(provider_id: str, date_from: Optional[date] = None, date_to: Optional[date] = None):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    start = date_from or date.today()
    flt = {"service_provider_id": provider_id, "service_date": {"$gte": start.isoformat()}}
    if date_to:
        flt["service_date"]["$lte"] = date_to.isoformat()
    bookings = get_documents("serviceproviderschedule", flt, sort=[("service_date", 1), ("start_time", 1)])
    return render(
        "Admin/ServiceManagement/Schedule",
        provider=provider_row(provider),
        bookings=[serialize(b) for b in bookings],
        free_slots=assignment.time_slots_for(provider, start),
        filters={"date_from": start.isoformat(), "date_to": date_to.isoformat() if date_to else None},
    )


@router.post("/service-management/{provider_id}/rate")
def providers_rate(provider_id: str, payload: RatingRequest):
    provider = find_or_404(db["serviceprovider"], provider_id, "Service provider")
    reviews = provider.get("total_reviews", 0)
    rating = round((provider.get("rating", 0) * reviews + payload.rating) / (reviews + 1), 2)
    update_document("serviceprovider", {"_id": provider["_id"]}, {"rating": rating, "total_reviews": reviews + 1})
    return {"success": True, "rating": rating, "total_reviews": reviews + 1}


# ------------------------------------------------------------------ locations & categories

@router.get("/cities")
def cities_index():
    return {"cities": [serialize(c) for c in get_documents("city", sort=[("sort_order", 1), ("name", 1)])]}


@router.post("/cities")
def cities_store(payload: CityRequest):
    slug = slugify(payload.name)
    if db["city"].find_one({"slug": slug}):
        raise HTTPException(status_code=422, detail="The city already exists.")
    city_id = create_document("city", City(slug=slug, **payload.model_dump()))
    return redirect("/admin/cities", "City created successfully.", id=city_id)


@router.get("/areas")
def areas_index(city_id: Optional[str] = None):
    flt = {"city_id": city_id} if city_id else {}
    return {"areas": [serialize(a) for a in get_documents("area", flt, sort=[("sort_order", 1), ("name", 1)])]}


@router.post("/areas")
def areas_store(payload: AreaRequest):
    find_or_404(db["city"], payload.city_id, "City")
    area_id = create_document("area", Area(slug=slugify(payload.name), **payload.model_dump()))
    return redirect("/admin/areas", "Area created successfully.", id=area_id)


@router.get("/provider-categories")
def provider_categories_index():
    rows = get_documents("serviceprovidercategory", sort=[("sort_order", 1), ("name", 1)])
    return {"categories": [serialize(c) for c in rows]}


@router.post("/provider-categories")
def provider_categories_store(payload: CategoryRequest):
    slug = slugify(payload.name)
    if db["serviceprovidercategory"].find_one({"slug": slug}):
        raise HTTPException(status_code=422, detail="The category already exists.")
    category_id = create_document("serviceprovidercategory", ServiceProviderCategory(slug=slug, **payload.model_dump()))
    return redirect("/admin/provider-categories", "Category created successfully.", id=category_id)
