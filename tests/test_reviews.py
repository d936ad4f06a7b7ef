import database
from helpers import oid


def paid_order(user, product_id):
    database.create_document("order", {
        "user_id": user["id"],
        "order_number": "ORD-REVIEW",
        "status": "delivered",
        "payment_status": "paid",
        "items": [{"product_id": product_id, "quantity": 1}],
    })


def post_review(client, user, product_id, rating=5, **extra):
    payload = {"product_id": product_id, "rating": rating, **extra}
    return client.post("/reviews", json=payload, headers=user["headers"])


def product(product_id):
    return database.db["product"].find_one({"_id": oid(product_id)})


def test_review_requires_a_paid_purchase(client, customer, make_product):
    product_id = make_product()
    res = post_review(client, customer, product_id)
    assert res.status_code == 422
    assert res.json()["detail"] == "You can only review products you have purchased."

    database.create_document("order", {"user_id": customer["id"], "payment_status": "pending",
                                       "items": [{"product_id": product_id}]})
    assert post_review(client, customer, product_id).status_code == 422


def test_one_review_per_product(client, customer, make_product):
    product_id = make_product()
    paid_order(customer, product_id)
    res = post_review(client, customer, product_id, title="Great", comment="Warm house")
    assert res.status_code == 200
    assert res.json()["success"] is True

    review = database.db["productreview"].find_one()
    assert review["is_approved"] is False
    assert product(product_id).get("reviews_count", 0) == 0
    assert post_review(client, customer, product_id, rating=1).status_code == 422


def test_rating_out_of_range(client, customer, make_product):
    product_id = make_product()
    paid_order(customer, product_id)
    assert post_review(client, customer, product_id, rating=6).status_code == 422


def test_approval_publishes_review(client, customer, admin, create_user, make_product):
    product_id = make_product(slug="ecotec")
    other = create_user()
    for user, rating in ((customer, 5), (other, 2)):
        paid_order(user, product_id)
        post_review(client, user, product_id, rating=rating, title="Boiler")

    ids = [str(r["_id"]) for r in database.db["productreview"].find()]
    client.patch(f"/admin/product-reviews/{ids[0]}/approve", headers=admin["headers"])
    assert (product(product_id)["average_rating"], product(product_id)["reviews_count"]) == (5, 1)

    client.patch(f"/admin/product-reviews/{ids[1]}/approve", headers=admin["headers"])
    assert (product(product_id)["average_rating"], product(product_id)["reviews_count"]) == (3.5, 2)

    props = client.get("/products/ecotec").json()["props"]
    assert props["product"]["rating"] == 3.5
    assert {r["user_name"] for r in props["reviews"]} == {"Test C."}
    assert props["ratingDistribution"] == {"5": 1, "4": 0, "3": 0, "2": 1, "1": 0}

    client.patch(f"/admin/product-reviews/{ids[1]}/reject", headers=admin["headers"])
    assert (product(product_id)["average_rating"], product(product_id)["reviews_count"]) == (5, 1)
    client.delete(f"/admin/product-reviews/{ids[0]}", headers=admin["headers"])
    assert (product(product_id)["average_rating"], product(product_id)["reviews_count"]) == (0, 0)


def test_editing_sends_review_back_to_moderation(client, customer, admin, make_product):
    product_id = make_product()
    paid_order(customer, product_id)
    post_review(client, customer, product_id, rating=4)
    review_id = str(database.db["productreview"].find_one()["_id"])
    client.patch(f"/admin/product-reviews/{review_id}/approve", headers=admin["headers"])

    res = client.put(f"/reviews/{review_id}", json={"rating": 2, "comment": "Noisy"}, headers=customer["headers"])
    assert res.status_code == 200
    review = database.db["productreview"].find_one()
    assert (review["rating"], review["is_approved"]) == (2, False)
    assert product(product_id)["reviews_count"] == 0


def test_reviews_belong_to_their_author(client, customer, create_user, make_product):
    product_id = make_product()
    paid_order(customer, product_id)
    post_review(client, customer, product_id)
    review_id = str(database.db["productreview"].find_one()["_id"])
    other = create_user()
    assert client.put(f"/reviews/{review_id}", json={"rating": 1}, headers=other["headers"]).status_code == 403
    assert client.delete(f"/reviews/{review_id}", headers=other["headers"]).status_code == 403
    assert client.delete(f"/reviews/{review_id}", headers=customer["headers"]).status_code == 200
    assert database.db["productreview"].count_documents({}) == 0


def test_bulk_moderation(client, customer, create_user, admin, make_product):
    product_id = make_product()
    users = [customer, create_user()]
    for user in users:
        paid_order(user, product_id)
        post_review(client, user, product_id, rating=4)
    ids = [str(r["_id"]) for r in database.db["productreview"].find()]

    res = client.post("/admin/product-reviews/bulk", json={"ids": ids, "action": "approve"}, headers=admin["headers"])
    assert res.json()["message"] == "Reviews approved successfully."
    assert product(product_id)["reviews_count"] == 2

    res = client.post("/admin/product-reviews/bulk", json={"ids": ids, "action": "reject"}, headers=admin["headers"])
    assert res.json()["message"] == "Reviews rejected successfully."
    assert product(product_id)["reviews_count"] == 0

    res = client.post("/admin/product-reviews/bulk", json={"ids": ids, "action": "feature"}, headers=admin["headers"])
    assert res.status_code == 422


def test_admin_review_search(client, customer, admin, make_product):
    product_id = make_product(name="Vaillant ecoTEC")
    paid_order(customer, product_id)
    post_review(client, customer, product_id, rating=3)

    res = client.get("/admin/product-reviews", params={"search": "ecotec"}, headers=admin["headers"])
    rows = res.json()["props"]["reviews"]["data"]
    assert [r["product"]["name"] for r in rows] == ["Vaillant ecoTEC"]
    res = client.get("/admin/product-reviews", params={"is_approved": "true"}, headers=admin["headers"])
    assert res.json()["props"]["reviews"]["total"] == 0
