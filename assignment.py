"""
Matching orders to service providers and keeping their calendars in step.

Writes always go through a Transaction so that a failed checkout or admin
action leaves no half-booked provider behind.
"""

import logging
from datetime import date, datetime
from typing import Iterable, List, Optional

from fastapi import HTTPException

import scheduling
from database import Transaction, db, utcnow
from helpers import oid

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_SLUG = "installer"

AVAILABLE = {"availability_status": "available", "is_active": True, "is_verified": True}


def has_capacity(provider: dict) -> bool:
    return provider.get("current_daily_orders", 0) < provider.get("max_daily_orders", 1)


def offers_services(provider: dict, service_ids: Iterable[str]) -> bool:
    offered = {s["service_id"] for s in provider.get("services", []) if s.get("is_active", True)}
    return set(service_ids) <= offered


def bookings_for(provider_id: str, service_date: str) -> List[dict]:
    return list(db["serviceproviderschedule"].find({
        "service_provider_id": provider_id,
        "service_date": service_date,
        "status": {"$in": list(scheduling.ACTIVE_BOOKING_STATUSES)},
    }))


def parse_date(value) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=422, detail="Invalid service date")


def time_slots_for(provider: dict, service_date, now: Optional[datetime] = None) -> List[dict]:
    day = parse_date(service_date)
    bookings = bookings_for(str(provider["_id"]), day.isoformat())
    return scheduling.available_slots(provider, day, bookings, now or utcnow())


def slot_is_free(provider: dict, service_date, time_slot: str, now: Optional[datetime] = None) -> bool:
    day = parse_date(service_date)
    bookings = bookings_for(str(provider["_id"]), day.isoformat())
    return scheduling.is_slot_available(provider, day, time_slot, bookings, now or utcnow())


def _category_id(slug: Optional[str]) -> Optional[str]:
    if not slug:
        return None
    category = db["serviceprovidercategory"].find_one({"slug": slug, "is_active": True})
    return str(category["_id"]) if category else None


def get_available_providers(city_id: Optional[str], area_id: Optional[str] = None, category_slug: Optional[str] = None,
                            service_ids: Optional[List[str]] = None, service_date=None, time_slot: Optional[str] = None,
                            now: Optional[datetime] = None) -> List[dict]:
    """Bookable providers for a location, best rated first."""
    flt = dict(AVAILABLE)
    if city_id:
        flt["city_id"] = city_id
    if area_id:
        flt["area_id"] = area_id
    category_id = _category_id(category_slug)
    if category_id:
        flt["category_id"] = category_id

    providers = [p for p in db["serviceprovider"].find(flt) if has_capacity(p)]
    if service_ids:
        providers = [p for p in providers if offers_services(p, service_ids)]
    if service_date and time_slot:
        providers = [p for p in providers if slot_is_free(p, service_date, time_slot, now)]

    providers.sort(key=lambda p: (-p.get("rating", 0), p.get("current_daily_orders", 0)))
    return providers


def display_name(provider: dict) -> str:
    if provider.get("business_name"):
        return provider["business_name"]
    user = db["user"].find_one({"_id": oid(provider["user_id"])}) if provider.get("user_id") else None
    if user:
        return f"{user.get('first_name', '')} {user.get('last_name', '')}".strip()
    return "Service provider"


def summary(provider: dict) -> dict:
    return {
        "id": str(provider["_id"]),
        "name": display_name(provider),
        "rating": provider.get("rating", 0),
        "total_reviews": provider.get("total_reviews", 0),
        "service_charge": provider.get("service_charge", 0),
        "availability_status": provider.get("availability_status"),
        "city_id": provider.get("city_id"),
        "area_id": provider.get("area_id"),
        "current_daily_orders": provider.get("current_daily_orders", 0),
        "max_daily_orders": provider.get("max_daily_orders", 1),
    }


def assign(tx: Transaction, order: dict, provider: dict, now: Optional[datetime] = None) -> dict:
    """
    Hand an order to a provider.

    Takes one of the provider's daily slots (compare-and-set on the counter so
    two checkouts cannot both take the last one) and books the calendar when
    the order names a concrete date and time slot.
    """
    provider_id = str(provider["_id"])
    current = provider.get("current_daily_orders", 0)
    if current >= provider.get("max_daily_orders", 1):
        raise HTTPException(status_code=422, detail="Service provider is fully booked")

    updated = tx.increment("serviceprovider", {"_id": provider["_id"], "current_daily_orders": current}, "current_daily_orders", 1)
    if updated is None:
        raise HTTPException(status_code=422, detail="Service provider is fully booked")
    if updated["current_daily_orders"] >= updated.get("max_daily_orders", 1):
        tx.update_one("serviceprovider", {"_id": provider["_id"]}, {"availability_status": "busy"})

    service_date = order.get("preferred_service_date")
    slot = order.get("service_time_slot")
    if service_date and slot and slot != scheduling.FLEXIBLE:
        if not slot_is_free(updated, service_date, slot, now):
            raise HTTPException(status_code=422, detail="Selected time slot is no longer available")
        start, end = scheduling.slot_bounds(slot)
        tx.create_document("serviceproviderschedule", {
            "service_provider_id": provider_id,
            "order_id": str(order["_id"]),
            "service_date": parse_date(service_date).isoformat(),
            "start_time": start,
            "end_time": end,
            "time_slot": slot,
            "status": "scheduled",
            "notes": order.get("service_instructions"),
        })

    tx.update_one("order", {"_id": order["_id"]}, {
        "service_provider_id": provider_id,
        "service_provider_charge": provider.get("service_charge", 0),
        "service_provider_status": "assigned",
        "assigned_at": utcnow(),
    })
    logger.info("Assigned order %s to provider %s", order.get("order_number"), provider_id)
    return updated


def auto_assign(tx: Transaction, order: dict, category_slug: str = DEFAULT_CATEGORY_SLUG, now: Optional[datetime] = None) -> Optional[dict]:
    """Pick the least busy provider in the order's area, falling back to the whole city."""
    address = order.get("shipping_address") or {}
    city_id, area_id = address.get("city_id"), address.get("area_id")
    if not city_id or not area_id:
        return None

    service_ids = sorted({s["service_id"] for item in order.get("items", []) for s in item.get("selected_services", [])})
    service_date = order.get("preferred_service_date")
    slot = order.get("service_time_slot")
    if slot == scheduling.FLEXIBLE:
        slot = None

    for area in (area_id, None):
        candidates = get_available_providers(city_id, area, category_slug, service_ids, service_date, slot, now)
        candidates.sort(key=lambda p: (p.get("current_daily_orders", 0), -p.get("rating", 0)))
        if candidates:
            return assign(tx, order, candidates[0], now)
    return None


def release(tx: Transaction, order: dict):
    """Give back the order's provider slot and cancel its calendar entry."""
    provider_id = order.get("service_provider_id")
    if not provider_id:
        return
    provider = tx.increment("serviceprovider", {"_id": oid(provider_id), "current_daily_orders": {"$gt": 0}}, "current_daily_orders", -1)
    if provider is not None and provider.get("availability_status") == "busy":
        tx.update_one("serviceprovider", {"_id": provider["_id"]}, {"availability_status": "available"})
    for booking in db["serviceproviderschedule"].find({"order_id": str(order["_id"]), "service_provider_id": provider_id, "status": "scheduled"}):
        tx.update_one("serviceproviderschedule", {"_id": booking["_id"]}, {"status": "cancelled"})


def reassign(tx: Transaction, order: dict, provider: Optional[dict] = None, now: Optional[datetime] = None) -> Optional[dict]:
    release(tx, order)
    if provider is not None:
        provider = db["serviceprovider"].find_one({"_id": provider["_id"]})
        return assign(tx, order, provider, now)
    return auto_assign(tx, order, now=now)
