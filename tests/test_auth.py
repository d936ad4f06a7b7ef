import database


def register(client, **overrides):
    payload = {"first_name": "Grace", "last_name": "Hopper", "email": "Grace@Example.com", "password": "compilers1"}
    payload.update(overrides)
    return client.post("/auth/register", json=payload)


def test_register_then_me(client):
    res = register(client)
    assert res.status_code == 200
    body = res.json()
    assert body["user"]["email"] == "grace@example.com"
    assert body["user"]["user_type"] == "customer"

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["name"] == "Grace Hopper"


def test_register_rejects_duplicate_email(client):
    register(client)
    res = register(client, email="grace@example.com")
    assert res.status_code == 422


def test_register_validates_password_length(client):
    assert register(client, password="short").status_code == 422


def test_login(client, customer):
    res = client.post("/auth/login", json={"email": customer["email"], "password": customer["password"]})
    assert res.status_code == 200
    assert res.json()["redirect"] == "/"


def test_login_admin_goes_to_back_office(client, admin):
    res = client.post("/auth/login", json={"email": admin["email"], "password": admin["password"]})
    assert res.json()["redirect"] == "/admin"


def test_login_wrong_password(client, customer):
    res = client.post("/auth/login", json={"email": customer["email"], "password": "nope-nope"})
    assert res.status_code == 401


def test_login_inactive_account(client, create_user):
    user = create_user(is_active=False)
    res = client.post("/auth/login", json={"email": user["email"], "password": user["password"]})
    assert res.status_code == 403


def test_tampered_token_is_rejected(client, customer):
    token = customer["headers"]["Authorization"] + "0"
    assert client.get("/auth/me", headers={"Authorization": token}).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Basic abc"}).status_code == 401
    assert client.get("/auth/me").status_code == 401


def test_back_office_requires_admin(client, customer, admin):
    assert client.get("/admin/dashboard").status_code == 401
    assert client.get("/admin/dashboard", headers=customer["headers"]).status_code == 403
    res = client.get("/admin/dashboard", headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["component"] == "Admin/Dashboard"


def test_register_merges_guest_cart(client, make_product):
    product_id = make_product()
    client.post("/cart/add", json={"product_id": product_id}, headers={"X-Session-Id": "guest-9"})
    res = client.post("/auth/register", headers={"X-Session-Id": "guest-9"}, json={
        "first_name": "Alan", "email": "alan@example.com", "password": "enigma123",
    })
    row = database.db["cart"].find_one()
    assert row["user_id"] == res.json()["user"]["id"]
