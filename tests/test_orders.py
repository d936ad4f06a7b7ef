import pytest

import database
from helpers import oid


@pytest.fixture
def place_order(client, make_product, checkout_payload):
    def _place(user, quantity=2, stock=5, **payload):
        product_id = make_product(stock_quantity=stock)
        client.post("/cart/add", json={"product_id": product_id, "quantity": quantity}, headers=user["headers"])
        res = client.post("/checkout/process", json=checkout_payload(**payload), headers=user["headers"])
        assert res.status_code == 200
        return res.json()["order_id"], product_id
    return _place


def test_lists_only_own_orders(client, customer, create_user, place_order):
    place_order(customer)
    other = create_user()
    place_order(other)

    res = client.get("/orders", headers=customer["headers"])
    orders = res.json()["props"]["orders"]
    assert orders["total"] == 1
    assert orders["data"][0]["total_items"] == 2


def test_status_filter(client, customer, place_order):
    place_order(customer)
    res = client.get("/orders", params={"status": "delivered"}, headers=customer["headers"])
    assert res.json()["props"]["orders"]["total"] == 0


def test_cannot_view_someone_elses_order(client, customer, create_user, place_order):
    order_id, _ = place_order(customer)
    other = create_user()
    assert client.get(f"/orders/{order_id}", headers=other["headers"]).status_code == 403
    assert client.get(f"/orders/{order_id}", headers=customer["headers"]).status_code == 200


def test_invalid_order_id(client, customer):
    assert client.get("/orders/not-an-id", headers=customer["headers"]).status_code == 400


def test_cancel_restocks(client, customer, place_order):
    order_id, product_id = place_order(customer, quantity=2, stock=2)
    assert database.db["product"].find_one({"_id": oid(product_id)})["in_stock"] is False

    res = client.post(f"/orders/{order_id}/cancel", headers=customer["headers"])
    assert res.status_code == 200
    product = database.db["product"].find_one({"_id": oid(product_id)})
    assert product["stock_quantity"] == 2
    assert product["in_stock"] is True
    assert database.db["order"].find_one({"_id": oid(order_id)})["status"] == "cancelled"


def test_cannot_cancel_shipped_order(client, customer, place_order):
    order_id, _ = place_order(customer)
    database.db["order"].update_one({"_id": oid(order_id)}, {"$set": {"status": "shipped"}})
    assert client.post(f"/orders/{order_id}/cancel", headers=customer["headers"]).status_code == 400


def test_cancel_frees_provider(client, customer, make_product, make_service, make_provider, checkout_payload, service_day):
    service_id = make_service()
    product_id = make_product(services=[{"service_id": service_id, "custom_price": None, "is_mandatory": True, "is_free": False}])
    provider_id = make_provider([service_id], max_daily_orders=1)
    client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    res = client.post("/checkout/process", headers=customer["headers"], json=checkout_payload(
        service_date=service_day.isoformat(), service_time="15:00-17:00", service_provider_id=provider_id,
    ))
    order_id = res.json()["order_id"]
    provider = database.db["serviceprovider"].find_one({"_id": oid(provider_id)})
    assert provider["availability_status"] == "busy"

    client.post(f"/orders/{order_id}/cancel", headers=customer["headers"])
    provider = database.db["serviceprovider"].find_one({"_id": oid(provider_id)})
    assert provider["current_daily_orders"] == 0
    assert provider["availability_status"] == "available"
    booking = database.db["serviceproviderschedule"].find_one({"order_id": order_id})
    assert booking["status"] == "cancelled"


def test_invoice_includes_payments(client, customer, place_order):
    order_id, _ = place_order(customer)
    res = client.get(f"/orders/{order_id}/invoice", headers=customer["headers"])
    assert res.json()["component"] == "Orders/Invoice"
    assert len(res.json()["props"]["payments"]) == 1
