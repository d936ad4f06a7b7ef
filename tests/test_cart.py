import database
from helpers import oid


def cart_rows():
    return list(database.db["cart"].find())


def test_guest_gets_a_session_id(client, make_product):
    product_id = make_product()
    res = client.post("/cart/add", json={"product_id": product_id, "quantity": 2})
    assert res.status_code == 200
    session_id = res.headers["X-Session-Id"]
    assert res.json()["cart_count"] == 2

    res = client.get("/cart/count", headers={"X-Session-Id": session_id})
    assert res.json() == {"count": 2}
    assert "X-Session-Id" not in res.headers


def test_adding_same_product_merges_lines(client, customer, make_product):
    product_id = make_product()
    client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    res = client.post("/cart/add", json={"product_id": product_id, "quantity": 2}, headers=customer["headers"])
    assert res.json()["message"] == "Cart updated successfully!"
    rows = cart_rows()
    assert len(rows) == 1
    assert rows[0]["quantity"] == 3
    assert rows[0]["user_id"] == customer["id"]


def test_cannot_add_beyond_stock(client, customer, make_product):
    product_id = make_product(stock_quantity=2)
    res = client.post("/cart/add", json={"product_id": product_id, "quantity": 3}, headers=customer["headers"])
    assert res.status_code == 400

    client.post("/cart/add", json={"product_id": product_id, "quantity": 2}, headers=customer["headers"])
    res = client.post("/cart/add", json={"product_id": product_id, "quantity": 1}, headers=customer["headers"])
    assert res.status_code == 400
    assert "Maximum available quantity is 2" in res.json()["detail"]


def test_unmanaged_stock_is_unlimited(client, customer, make_product):
    product_id = make_product(stock_quantity=0, manage_stock=False)
    res = client.post("/cart/add", json={"product_id": product_id, "quantity": 50}, headers=customer["headers"])
    assert res.status_code == 200


def test_inactive_product_rejected(client, customer, make_product):
    product_id = make_product(status="draft")
    res = client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    assert res.status_code == 400


def test_mandatory_services_are_added(client, customer, make_product, make_service):
    mandatory = make_service(name="Safety check", is_optional=False, price=15)
    optional = make_service(name="Disposal", price=10)
    product_id = make_product(services=[
        {"service_id": mandatory, "custom_price": None, "is_mandatory": False, "is_free": False},
        {"service_id": optional, "custom_price": None, "is_mandatory": False, "is_free": False},
    ])
    client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    assert cart_rows()[0]["selected_services"] == [mandatory]

    res = client.get("/cart", headers=customer["headers"])
    props = res.json()["props"]
    line = props["cartItems"][0]
    assert line["services_total"] == 15
    assert "product_model" not in line
    assert props["cartSummary"]["shipping_amount"] == 0


def test_service_not_offered_with_product(client, customer, make_product, make_service):
    service = make_service()
    product_id = make_product()
    res = client.post("/cart/add", json={"product_id": product_id, "selected_services": [service]},
                      headers=customer["headers"])
    assert res.status_code == 422


def test_update_services_keeps_mandatory(client, customer, make_product, make_service):
    mandatory = make_service(is_optional=False)
    optional = make_service(price=10)
    product_id = make_product(services=[
        {"service_id": mandatory, "custom_price": None, "is_mandatory": False, "is_free": False},
        {"service_id": optional, "custom_price": 5, "is_mandatory": False, "is_free": False},
    ])
    client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    line_id = str(cart_rows()[0]["_id"])

    res = client.patch(f"/cart/{line_id}/services", json={"selected_services": [optional]}, headers=customer["headers"])
    assert res.status_code == 200
    assert set(res.json()["selected_services"]) == {mandatory, optional}
    assert res.json()["cart_summary"]["total_services_amount"] == 35


def test_update_quantity_checks_stock(client, customer, make_product):
    product_id = make_product(stock_quantity=4)
    client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    line_id = str(cart_rows()[0]["_id"])

    res = client.patch(f"/cart/{line_id}", json={"quantity": 5}, headers=customer["headers"])
    assert res.status_code == 422
    res = client.patch(f"/cart/{line_id}", json={"quantity": 4}, headers=customer["headers"])
    assert res.status_code == 200
    assert res.json()["cart_count"] == 4


def test_other_visitors_lines_are_off_limits(client, customer, create_user, make_product):
    product_id = make_product()
    client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    line_id = str(cart_rows()[0]["_id"])

    intruder = create_user()
    assert client.delete(f"/cart/{line_id}", headers=intruder["headers"]).status_code == 403
    assert client.patch(f"/cart/{line_id}", json={"quantity": 2}, headers={"X-Session-Id": "guest"}).status_code == 403
    assert client.delete(f"/cart/{line_id}", headers=customer["headers"]).status_code == 200
    assert cart_rows() == []


def test_clear_only_touches_own_cart(client, customer, make_product):
    product_id = make_product()
    client.post("/cart/add", json={"product_id": product_id}, headers=customer["headers"])
    client.post("/cart/add", json={"product_id": product_id}, headers={"X-Session-Id": "guest-1"})

    res = client.delete("/cart", headers={"X-Session-Id": "guest-1"})
    assert res.json()["cart_count"] == 0
    rows = cart_rows()
    assert len(rows) == 1 and rows[0]["user_id"] == customer["id"]


def test_guest_cart_merges_on_login(client, customer, make_product):
    product_id = make_product(stock_quantity=3)
    other_id = make_product()
    client.post("/cart/add", json={"product_id": product_id, "quantity": 2}, headers=customer["headers"])
    client.post("/cart/add", json={"product_id": product_id, "quantity": 2}, headers={"X-Session-Id": "guest-2"})
    client.post("/cart/add", json={"product_id": other_id}, headers={"X-Session-Id": "guest-2"})

    res = client.post("/auth/login", json={"email": customer["email"], "password": customer["password"]},
                      headers={"X-Session-Id": "guest-2"})
    assert res.status_code == 200

    rows = {r["product_id"]: r for r in cart_rows()}
    assert len(rows) == 2
    assert rows[product_id]["quantity"] == 3
    assert rows[other_id]["user_id"] == customer["id"]
    assert rows[other_id]["session_id"] is None
    assert database.db["product"].find_one({"_id": oid(product_id)})["stock_quantity"] == 3
