import uuid
from datetime import date, timedelta

import mongomock
import pytest

# The client in database.py is created at import time, so the patch has to be live first.
_mongo = mongomock.patch(servers=(("localhost", 27017),))
_mongo.start()

from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
from main import app  # noqa: E402
from security import hash_password, make_token  # noqa: E402


def next_workday(days_ahead: int = 3) -> date:
    """A date far enough out for default advance-booking rules, never a Sunday."""
    day = date.today() + timedelta(days=days_ahead)
    while day.weekday() == 6:
        day += timedelta(days=1)
    return day


@pytest.fixture
def service_day() -> date:
    return next_workday()


@pytest.fixture(autouse=True)
def clean_db():
    yield
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def create_user():
    def _create(user_type="customer", email=None, password="secret123", **extra):
        email = email or f"{user_type}-{uuid.uuid4().hex[:6]}@example.com"
        doc = {
            "first_name": "Test",
            "last_name": user_type.title(),
            "email": email,
            "phone": "07700900000",
            "password_hash": hash_password(password),
            "user_type": user_type,
            "is_active": True,
        }
        doc.update(extra)
        user_id = database.create_document("user", doc)
        token = make_token(user_id, email, user_type)
        return {"id": user_id, "email": email, "password": password,
                "headers": {"Authorization": f"Bearer {token}"}}
    return _create


@pytest.fixture
def customer(create_user):
    return create_user()


@pytest.fixture
def admin(create_user):
    return create_user("admin")


@pytest.fixture
def make_service():
    def _make(**overrides):
        values = {
            "name": "Installation",
            "slug": f"installation-{uuid.uuid4().hex[:6]}",
            "type": "installation",
            "price": 30.0,
            "is_optional": True,
            "is_free": False,
            "is_active": True,
            "sort_order": 0,
        }
        values.update(overrides)
        return database.create_document("productservice", values)
    return _make


@pytest.fixture
def make_product():
    def _make(**overrides):
        suffix = uuid.uuid4().hex[:6]
        values = {
            "name": f"Combi Boiler {suffix}",
            "slug": f"combi-boiler-{suffix}",
            "sku": f"SKU-{suffix}",
            "price": 20.0,
            "sale_price": None,
            "stock_quantity": 10,
            "manage_stock": True,
            "in_stock": True,
            "low_stock_threshold": 5,
            "status": "active",
            "is_featured": False,
            "brand_id": None,
            "category_id": None,
            "services": [],
        }
        values.update(overrides)
        return database.create_document("product", values)
    return _make


@pytest.fixture
def location():
    city_id = database.create_document("city", {"name": "Leeds", "slug": "leeds", "region": "England", "is_active": True, "sort_order": 0})
    area_id = database.create_document("area", {"city_id": city_id, "name": "Headingley", "slug": "headingley",
                                                "postcode": "LS6", "is_active": True, "sort_order": 0})
    return {"city_id": city_id, "area_id": area_id}


@pytest.fixture
def make_provider(create_user, location):
    def _make(service_ids=(), **overrides):
        user = create_user("service_provider")
        values = {
            "user_id": user["id"],
            "category_id": None,
            "city_id": location["city_id"],
            "area_id": location["area_id"],
            "business_name": f"Fitters {uuid.uuid4().hex[:4]}",
            "service_charge": 25.0,
            "availability_status": "available",
            "max_daily_orders": 5,
            "current_daily_orders": 0,
            "rating": 4.5,
            "total_reviews": 2,
            "total_jobs_completed": 0,
            "is_active": True,
            "is_verified": True,
            "working_hours": None,
            "avg_service_duration": 60,
            "min_advance_booking_hours": 0,
            "services": [{"service_id": s, "custom_price": None, "experience_level": "expert", "is_active": True}
                         for s in service_ids],
        }
        values.update(overrides)
        return database.create_document("serviceprovider", values)
    return _make


@pytest.fixture
def checkout_payload(location):
    def _payload(**overrides):
        payload = {}
        for kind in ("billing", "shipping"):
            payload.update({
                f"{kind}_first_name": "Ada",
                f"{kind}_last_name": "Lovelace",
                f"{kind}_phone": "07700900123",
                f"{kind}_city_id": location["city_id"],
                f"{kind}_area_id": location["area_id"],
                f"{kind}_address": "1 Otley Road",
            })
        payload["payment_method"] = "cod"
        payload.update(overrides)
        return payload
    return _payload
