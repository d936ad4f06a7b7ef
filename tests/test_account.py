import database
from helpers import oid


def address(**overrides):
    payload = {"type": "shipping", "first_name": "Ada", "last_name": "Lovelace", "address_line_1": "1 Otley Road",
               "city": "Leeds", "postal_code": "LS6 3AA"}
    payload.update(overrides)
    return payload


def test_profile_update(client, customer):
    res = client.patch("/profile", json={"first_name": "Ada", "last_name": "King"}, headers=customer["headers"])
    assert res.status_code == 200
    props = client.get("/profile", headers=customer["headers"]).json()["props"]
    assert props["user"]["name"] == "Ada King"


def test_email_change_needs_password(client, customer, create_user):
    other = create_user()
    wrong = client.patch("/profile/email", json={"email": "new@example.com", "password": "bad-pass"}, headers=customer["headers"])
    assert wrong.status_code == 422
    taken = client.patch("/profile/email", json={"email": other["email"], "password": customer["password"]},
                         headers=customer["headers"])
    assert taken.status_code == 422
    ok = client.patch("/profile/email", json={"email": "New@example.com", "password": customer["password"]},
                      headers=customer["headers"])
    assert ok.status_code == 200
    assert database.db["user"].find_one({"_id": oid(customer["id"])})["email"] == "new@example.com"


def test_password_change(client, customer):
    mismatch = {"current_password": customer["password"], "password": "longer-pass", "password_confirmation": "other-pass"}
    assert client.patch("/profile/password", json=mismatch, headers=customer["headers"]).status_code == 422

    change = dict(mismatch, password_confirmation="longer-pass")
    assert client.patch("/profile/password", json=change, headers=customer["headers"]).status_code == 200
    res = client.post("/auth/login", json={"email": customer["email"], "password": "longer-pass"})
    assert res.status_code == 200


def test_one_default_address_per_type(client, customer):
    first = client.post("/profile/addresses", json=address(is_default=True), headers=customer["headers"]).json()["id"]
    second = client.post("/profile/addresses", json=address(is_default=True), headers=customer["headers"]).json()["id"]
    billing = client.post("/profile/addresses", json=address(type="billing", is_default=True), headers=customer["headers"]).json()["id"]

    defaults = {str(a["_id"]) for a in database.db["useraddress"].find({"is_default": True})}
    assert defaults == {second, billing}

    client.post(f"/profile/addresses/{first}/default", headers=customer["headers"])
    defaults = {str(a["_id"]) for a in database.db["useraddress"].find({"is_default": True})}
    assert defaults == {first, billing}


def test_addresses_are_private(client, customer, create_user):
    address_id = client.post("/profile/addresses", json=address(), headers=customer["headers"]).json()["id"]
    other = create_user()
    assert client.delete(f"/profile/addresses/{address_id}", headers=other["headers"]).status_code == 403
    assert client.put(f"/profile/addresses/{address_id}", json=address(city="York"), headers=other["headers"]).status_code == 403
    assert client.delete(f"/profile/addresses/{address_id}", headers=customer["headers"]).status_code == 200
