import pytest

import database
from helpers import oid


@pytest.fixture
def installer_category():
    return database.create_document("serviceprovidercategory", {"name": "Installer", "slug": "installer", "is_active": True})


def test_product_services_listing(client, make_product, make_service):
    paid = make_service(name="Fit", price=30)
    free = make_service(name="Disposal", price=10)
    product_id = make_product(services=[
        {"service_id": paid, "custom_price": 45, "is_mandatory": False, "is_free": False},
        {"service_id": free, "custom_price": None, "is_mandatory": False, "is_free": True},
    ])
    res = client.get(f"/api/services/product/{product_id}")
    assert res.status_code == 200
    prices = {s["name"]: s["price"] for s in res.json()["services"]}
    assert prices == {"Fit": 45, "Disposal": 0}


def test_check_availability_requires_every_service(client, location, make_service, make_provider, installer_category,
                                                   service_day):
    fit, remove = make_service(), make_service()
    make_provider([fit], category_id=installer_category, business_name="Half")
    make_provider([fit, remove], category_id=installer_category, business_name="Full")
    res = client.post("/api/services/check-availability", json={
        **location, "service_ids": [fit, remove], "service_date": service_day.isoformat(), "service_time": "09:00-11:00",
    })
    body = res.json()
    assert body["available"] is True
    assert [p["name"] for p in body["providers"]] == ["Full"]


def test_check_availability_rejects_past_dates(client, location, make_service):
    res = client.post("/api/services/check-availability", json={
        **location, "service_ids": [make_service()], "service_date": "2000-01-01",
    })
    assert res.status_code == 422


def test_check_availability_filters_by_installer_category(client, location, make_service, make_provider, installer_category):
    fit = make_service()
    other = database.create_document("serviceprovidercategory", {"name": "Electrician", "slug": "electrician", "is_active": True})
    make_provider([fit], category_id=other)
    res = client.post("/api/services/check-availability", json={**location, "service_ids": [fit]})
    assert res.json()["provider_count"] == 0


def test_available_slots_for_one_provider(client, location, make_provider, service_day):
    provider_id = make_provider()
    database.create_document("serviceproviderschedule", {
        "service_provider_id": provider_id, "service_date": service_day.isoformat(),
        "start_time": "09:00", "end_time": "11:00", "time_slot": "09:00-11:00", "status": "scheduled",
    })
    res = client.post("/api/services/available-slots", json={
        **location, "provider_id": provider_id, "service_date": service_day.isoformat(),
    })
    slots = [s["slot"] for s in res.json()["slots"]]
    assert "09:00-11:00" not in slots
    assert len(slots) == 4


def test_available_slots_across_providers(client, location, make_provider, service_day):
    make_provider(business_name="Top", rating=5.0)
    make_provider(business_name="Closed", working_hours={"sunday": {"start": "09:00", "end": "17:00", "available": True}})
    res = client.post("/api/services/available-slots", json={**location, "service_date": service_day.isoformat()})
    names = [p["provider"]["name"] for p in res.json()["available_providers"]]
    assert names == ["Top"]


def test_area_must_belong_to_city(client, location, make_provider, service_day):
    other_city = database.create_document("city", {"name": "York", "slug": "york", "is_active": True})
    res = client.post("/api/services/available-slots", json={
        "city_id": other_city, "area_id": location["area_id"], "service_date": service_day.isoformat(),
    })
    assert res.status_code == 422


def test_provider_details(client, make_provider, make_service):
    service_id = make_service(name="Fit")
    provider_id = make_provider([service_id], business_name="Ace")
    res = client.get(f"/api/services/providers/{provider_id}")
    provider = res.json()["provider"]
    assert provider["name"] == "Ace"
    assert provider["location"] == "Headingley, Leeds"
    assert "sunday" not in provider["working_days"]
    assert provider["services"][0]["experience_level"] == "expert"


def test_calculate_cost(client, make_product, make_service):
    service_id = make_service(price=30)
    custom = make_product(services=[{"service_id": service_id, "custom_price": 20, "is_mandatory": False, "is_free": False}])
    plain = make_product()
    res = client.post("/api/services/calculate-cost", json={"service_ids": [service_id], "product_ids": [custom, plain]})
    assert res.json()["total_cost"] == 50
    assert [d["price"] for d in res.json()["details"]] == [20, 30]


# ------------------------------------------------------------------ back office

def provider_payload(create_user, location, **overrides):
    user = create_user("service_provider")
    payload = {"user_id": user["id"], "new_category_name": "Installer", "city_id": location["city_id"],
               "area_id": location["area_id"], "service_charge": 35}
    payload.update(overrides)
    return payload


def test_create_provider_with_new_locations(client, admin, create_user, location):
    res = client.post("/admin/service-management", headers=admin["headers"], json=provider_payload(
        create_user, location, city_id=None, area_id=None,
        new_city_name="Bristol", new_city_region="England", new_area_name="Clifton", new_area_postcode="BS8",
    ))
    assert res.status_code == 200
    provider = database.db["serviceprovider"].find_one({"_id": oid(res.json()["id"])})
    area = database.db["area"].find_one({"_id": oid(provider["area_id"])})
    assert area["city_id"] == provider["city_id"]
    assert database.db["serviceprovidercategory"].find_one({"slug": "installer"}) is not None


def test_create_provider_rolls_back_new_locations(client, admin, create_user, location):
    res = client.post("/admin/service-management", headers=admin["headers"], json=provider_payload(
        create_user, location, area_id=str(oid("0" * 24)),
    ))
    assert res.status_code == 422
    assert database.db["serviceprovidercategory"].count_documents({}) == 0
    assert database.db["serviceprovider"].count_documents({}) == 0


def test_new_city_needs_known_region(client, admin, create_user, location):
    res = client.post("/admin/service-management", headers=admin["headers"], json=provider_payload(
        create_user, location, city_id=None, new_city_name="Paris", new_city_region="France",
    ))
    assert res.status_code == 422


def test_one_provider_per_user(client, admin, create_user, location):
    payload = provider_payload(create_user, location)
    client.post("/admin/service-management", json=payload, headers=admin["headers"])
    assert client.post("/admin/service-management", json=payload, headers=admin["headers"]).status_code == 422


def test_working_hours_validation(client, admin, make_provider):
    provider_id = make_provider()
    bad = {"working_hours": {"monday": {"start": "18:00", "end": "08:00"}}}
    assert client.put(f"/admin/service-management/{provider_id}/working-hours", json=bad,
                      headers=admin["headers"]).status_code == 422

    good = {"working_hours": {"monday": {"start": "08:00", "end": "16:00"}}}
    res = client.put(f"/admin/service-management/{provider_id}/working-hours", json=good, headers=admin["headers"])
    assert res.json()["working_hours"]["tuesday"]["available"] is False


def test_completing_a_booking_frees_the_slot(client, admin, make_provider, service_day):
    provider_id = make_provider(current_daily_orders=1, max_daily_orders=1, availability_status="busy")
    order_id = database.create_document("order", {"order_number": "ORD-TEST", "status": "processing", "items": []})
    schedule_id = database.create_document("serviceproviderschedule", {
        "service_provider_id": provider_id, "order_id": order_id, "service_date": service_day.isoformat(),
        "start_time": "09:00", "end_time": "11:00", "time_slot": "09:00-11:00", "status": "scheduled",
    })
    res = client.patch(f"/admin/service-management/schedules/{schedule_id}/status", json={"status": "completed"},
                       headers=admin["headers"])
    assert res.status_code == 200
    provider = database.db["serviceprovider"].find_one({"_id": oid(provider_id)})
    assert provider["current_daily_orders"] == 0
    assert provider["availability_status"] == "available"
    assert provider["total_jobs_completed"] == 1
    assert database.db["order"].find_one({"_id": oid(order_id)})["service_provider_status"] == "completed"


def book(provider_id, service_day, slot="09:00-11:00", order_id=None):
    start, end = slot.split("-")
    return database.create_document("serviceproviderschedule", {
        "service_provider_id": provider_id, "order_id": order_id, "service_date": service_day.isoformat(),
        "start_time": start, "end_time": end, "time_slot": slot, "status": "scheduled",
    })


def test_finished_booking_cannot_be_reopened(client, admin, make_provider, service_day):
    provider_id = make_provider(current_daily_orders=2, max_daily_orders=2, availability_status="busy")
    first = book(provider_id, service_day)
    book(provider_id, service_day, "13:00-15:00")
    url = f"/admin/service-management/schedules/{first}/status"

    assert client.patch(url, json={"status": "completed"}, headers=admin["headers"]).status_code == 200
    assert client.patch(url, json={"status": "scheduled"}, headers=admin["headers"]).status_code == 422
    assert client.patch(url, json={"status": "cancelled"}, headers=admin["headers"]).status_code == 422
    assert client.patch(url, json={"status": "completed", "notes": "Signed off"}, headers=admin["headers"]).status_code == 200

    provider = database.db["serviceprovider"].find_one({"_id": oid(provider_id)})
    assert (provider["current_daily_orders"], provider["total_jobs_completed"]) == (1, 1)
    booking = database.db["serviceproviderschedule"].find_one({"_id": oid(first)})
    assert (booking["status"], booking["notes"]) == ("completed", "Signed off")


def test_cancelling_a_booking_does_not_count_a_job(client, admin, make_provider, service_day):
    provider_id = make_provider(current_daily_orders=1)
    schedule_id = book(provider_id, service_day)
    url = f"/admin/service-management/schedules/{schedule_id}/status"
    client.patch(url, json={"status": "in_progress"}, headers=admin["headers"])
    client.patch(url, json={"status": "cancelled"}, headers=admin["headers"])
    provider = database.db["serviceprovider"].find_one({"_id": oid(provider_id)})
    assert (provider["current_daily_orders"], provider["total_jobs_completed"]) == (0, 0)


def assigned_order(provider_id):
    return database.create_document("order", {
        "order_number": f"ORD-{provider_id[-6:]}", "status": "processing", "items": [],
        "service_provider_id": provider_id, "service_provider_status": "assigned",
    })


def test_deleting_a_provider_cancels_its_work(client, admin, make_provider, service_day):
    provider_id = make_provider(current_daily_orders=1)
    order_id = assigned_order(provider_id)
    schedule_id = book(provider_id, service_day, order_id=order_id)

    assert client.delete(f"/admin/service-management/{provider_id}", headers=admin["headers"]).status_code == 200
    assert database.db["serviceprovider"].count_documents({}) == 0
    assert database.db["serviceproviderschedule"].find_one({"_id": oid(schedule_id)})["status"] == "cancelled"
    assert database.db["order"].find_one({"_id": oid(order_id)})["service_provider_status"] == "cancelled"


def test_bulk_delete_cancels_bookings_of_every_provider(client, admin, make_provider, service_day):
    providers = [make_provider(), make_provider()]
    keep = make_provider()
    orders = [assigned_order(p) for p in providers + [keep]]
    for provider_id, order_id in zip(providers + [keep], orders):
        book(provider_id, service_day, order_id=order_id)

    res = client.post("/admin/service-management/bulk", json={"ids": providers, "action": "delete"}, headers=admin["headers"])
    assert res.json()["count"] == 2
    assert [str(p["_id"]) for p in database.db["serviceprovider"].find()] == [keep]
    statuses = {b["service_provider_id"]: b["status"] for b in database.db["serviceproviderschedule"].find()}
    assert statuses == {providers[0]: "cancelled", providers[1]: "cancelled", keep: "scheduled"}
    assert database.db["order"].count_documents({"service_provider_status": "cancelled"}) == 2


def test_provider_delete_rolls_back_on_failure(client, admin, make_provider, service_day, monkeypatch):
    provider_id = make_provider()
    order_id = assigned_order(provider_id)
    book(provider_id, service_day, order_id=order_id)

    def broken(self, collection_name, filter_dict):
        raise RuntimeError("delete failed")

    monkeypatch.setattr(database.Transaction, "delete_many", broken)
    with pytest.raises(RuntimeError):
        client.delete(f"/admin/service-management/{provider_id}", headers=admin["headers"])
    assert database.db["serviceprovider"].count_documents({}) == 1
    assert database.db["serviceproviderschedule"].find_one()["status"] == "scheduled"
    assert database.db["order"].find_one({"_id": oid(order_id)})["service_provider_status"] == "assigned"


def test_rating_is_a_running_average(client, admin, make_provider):
    provider_id = make_provider(rating=4.0, total_reviews=1)
    res = client.post(f"/admin/service-management/{provider_id}/rate", json={"rating": 5}, headers=admin["headers"])
    assert res.json() == {"success": True, "rating": 4.5, "total_reviews": 2}


def test_reset_daily_orders(client, admin, make_provider):
    provider_id = make_provider(current_daily_orders=5, availability_status="busy")
    client.post(f"/admin/service-management/{provider_id}/reset-daily-orders", headers=admin["headers"])
    provider = database.db["serviceprovider"].find_one({"_id": oid(provider_id)})
    assert (provider["current_daily_orders"], provider["availability_status"]) == (0, "available")


def test_schedule_view_lists_bookings_and_free_slots(client, admin, make_provider, service_day):
    provider_id = make_provider()
    database.create_document("serviceproviderschedule", {
        "service_provider_id": provider_id, "service_date": service_day.isoformat(),
        "start_time": "13:00", "end_time": "15:00", "time_slot": "13:00-15:00", "status": "scheduled",
    })
    res = client.get(f"/admin/service-management/{provider_id}/schedule", params={"date_from": service_day.isoformat()},
                     headers=admin["headers"])
    props = res.json()["props"]
    assert len(props["bookings"]) == 1
    assert "13:00-15:00" not in [s["slot"] for s in props["free_slots"]]


def test_bulk_verify(client, admin, make_provider):
    provider_id = make_provider(is_verified=False)
    res = client.post("/admin/service-management/bulk", json={"ids": [provider_id], "action": "verify"},
                      headers=admin["headers"])
    assert res.json()["count"] == 1
    assert database.db["serviceprovider"].find_one({"_id": oid(provider_id)})["is_verified"] is True


def test_cities_and_areas(client, admin):
    city_id = client.post("/admin/cities", json={"name": "Cardiff", "region": "Wales"}, headers=admin["headers"]).json()["id"]
    assert client.post("/admin/cities", json={"name": "Cardiff"}, headers=admin["headers"]).status_code == 422
    client.post("/admin/areas", json={"city_id": city_id, "name": "Roath", "postcode": "CF24"}, headers=admin["headers"])
    areas = client.get("/admin/areas", params={"city_id": city_id}, headers=admin["headers"]).json()["areas"]
    assert [a["name"] for a in areas] == ["Roath"]
