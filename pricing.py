"""
Money rules shared by the cart, checkout, POS and admin screens.

Everything here works on plain dicts (documents straight out of MongoDB) and
never touches the database.
"""

import os
from datetime import datetime, timezone
from typing import Iterable, Optional

TAX_RATE = float(os.getenv("TAX_RATE", "0.20"))
FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", "50"))
SHIPPING_FLAT_RATE = float(os.getenv("SHIPPING_FLAT_RATE", "4.99"))


def final_price(product: dict) -> float:
    sale = product.get("sale_price")
    if sale is not None:
        return float(sale)
    return float(product.get("price", 0))


def discount_percentage(product: dict) -> float:
    price = float(product.get("price") or 0)
    sale = product.get("sale_price")
    if sale is not None and price > float(sale):
        return round((price - float(sale)) / price * 100, 2)
    return 0


def find_assignment(product: dict, service_id: str) -> Optional[dict]:
    for a in product.get("services", []):
        if a.get("service_id") == service_id:
            return a
    return None


def service_price(service: dict, assignment: Optional[dict] = None) -> float:
    """Price of a service when sold with a product; free flags win over any price."""
    if service.get("is_free") or (assignment and assignment.get("is_free")):
        return 0.0
    if assignment and assignment.get("custom_price") is not None:
        return float(assignment["custom_price"])
    return float(service.get("price", 0))


def is_mandatory(service: dict, assignment: Optional[dict] = None) -> bool:
    if not service.get("is_optional", True):
        return True
    return bool(assignment and assignment.get("is_mandatory"))


def coupon_is_valid(coupon: dict, cart_total: float = 0, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    if not coupon.get("is_active"):
        return False
    if coupon.get("starts_at") and now < coupon["starts_at"]:
        return False
    if coupon.get("expires_at") and now > coupon["expires_at"]:
        return False
    if coupon.get("usage_limit") and coupon.get("used_count", 0) >= coupon["usage_limit"]:
        return False
    if coupon.get("minimum_amount") and cart_total < coupon["minimum_amount"]:
        return False
    return True


def coupon_discount(coupon: dict, cart_total: float, now: Optional[datetime] = None) -> float:
    if not coupon_is_valid(coupon, cart_total, now):
        return 0.0
    value = float(coupon.get("value", 0))
    if coupon.get("type") == "percentage":
        discount = cart_total * value / 100
        cap = coupon.get("maximum_discount")
        if cap and discount > cap:
            discount = float(cap)
    else:
        discount = min(value, cart_total)
    return round(discount, 2)


def line_total(line: dict) -> float:
    return line["unit_price"] * line["quantity"] + line.get("services_total", 0)


def summarize(lines: Iterable[dict], discount: float = 0, applied_coupon: Optional[dict] = None) -> dict:
    """
    Totals for a list of cart lines.

    Each line needs unit_price, quantity and services_total. Tax is charged on
    the discounted goods plus services; shipping is waived above the free
    threshold or when a service provider delivers (any line with services).
    """
    lines = list(lines)
    subtotal = sum(l["unit_price"] * l["quantity"] for l in lines)
    services = sum(l.get("services_total", 0) for l in lines)
    total_items = sum(l["quantity"] for l in lines)
    discount = min(max(discount, 0), subtotal)
    discounted = subtotal - discount

    has_services = any(l.get("selected_services") for l in lines)
    if not lines or has_services or discounted > FREE_SHIPPING_THRESHOLD:
        shipping = 0.0
    else:
        shipping = SHIPPING_FLAT_RATE

    subtotal, services, discount = round(subtotal, 2), round(services, 2), round(discount, 2)
    tax = round((subtotal - discount + services) * TAX_RATE, 2)
    # built from the rounded parts so the order total always reconciles with them
    total = round(subtotal - discount + services + tax + shipping, 2)

    return {
        "subtotal": subtotal,
        "total_services_amount": services,
        "discount_amount": discount,
        "tax_rate": TAX_RATE,
        "tax_amount": tax,
        "shipping_amount": round(shipping, 2),
        "total": total,
        "total_items": total_items,
        "free_shipping_threshold": FREE_SHIPPING_THRESHOLD,
        "amount_for_free_shipping": round(FREE_SHIPPING_THRESHOLD - discounted, 2) if discounted <= FREE_SHIPPING_THRESHOLD and not has_services else 0,
        "applied_coupon": applied_coupon,
    }
