import database


def inquiry(client, **values):
    payload = {"name": "Ada Lovelace", "email": "ada@example.com", "subject": "Boiler quote",
               "message": "Do you fit in LS6?"}
    payload.update(values)
    return client.post("/contact", json=payload)


def test_contact_form_creates_inquiry(client):
    res = inquiry(client, phone="07700900123")
    assert res.status_code == 200
    stored = database.db["contactinquiry"].find_one()
    assert (stored["status"], stored["phone"]) == ("new", "07700900123")

    assert inquiry(client, email="not-an-email").status_code == 422
    assert inquiry(client, message="").status_code == 422


def test_contact_page_shows_contact_settings(client, admin):
    client.post("/admin/settings", json={"key": "contact_phone", "value": "0113 000 0000", "group": "contact"},
                headers=admin["headers"])
    client.post("/admin/settings", json={"key": "site_name", "value": "Boiler Shop"}, headers=admin["headers"])
    assert client.get("/contact").json()["props"]["contact"] == {"contact_phone": "0113 000 0000"}


def test_inquiry_workflow(client, admin, customer):
    inquiry_id = inquiry(client).json()["id"]
    assert client.get("/admin/contact-inquiries", headers=customer["headers"]).status_code == 403

    res = client.patch(f"/admin/contact-inquiries/{inquiry_id}/status",
                       json={"status": "resolved", "admin_notes": "Quoted by phone"}, headers=admin["headers"])
    assert res.status_code == 200
    shown = client.get(f"/admin/contact-inquiries/{inquiry_id}", headers=admin["headers"]).json()["props"]["inquiry"]
    assert (shown["status"], shown["admin_notes"]) == ("resolved", "Quoted by phone")

    res = client.patch(f"/admin/contact-inquiries/{inquiry_id}/status", json={"status": "archived"},
                       headers=admin["headers"])
    assert res.status_code == 422


def test_inquiry_index_filters(client, admin):
    inquiry(client, subject="Radiator leak")
    inquiry(client, name="Grace Hopper", email="grace@example.com")
    props = client.get("/admin/contact-inquiries", params={"search": "radiator"}, headers=admin["headers"]).json()["props"]
    assert [i["subject"] for i in props["inquiries"]["data"]] == ["Radiator leak"]
    assert props["inquiry_statuses"] == ["new", "in_progress", "resolved", "closed"]


def test_inquiry_bulk_actions(client, admin):
    ids = [inquiry(client).json()["id"] for _ in range(3)]
    res = client.post("/admin/contact-inquiries/bulk", json={"ids": ids[:2], "action": "mark_progress"},
                      headers=admin["headers"])
    assert res.json()["message"] == "Inquiries marked as in progress."
    assert database.db["contactinquiry"].count_documents({"status": "in_progress"}) == 2

    res = client.post("/admin/contact-inquiries/bulk", json={"ids": ids, "action": "delete"}, headers=admin["headers"])
    assert res.json()["count"] == 3
    res = client.post("/admin/contact-inquiries/bulk", json={"ids": ids, "action": "archive"}, headers=admin["headers"])
    assert res.status_code == 422


def test_setting_keys_are_unique(client, admin):
    res = client.post("/admin/settings", json={"key": "site_name", "value": "Boiler Shop"}, headers=admin["headers"])
    assert res.status_code == 200
    res = client.post("/admin/settings", json={"key": "site_name", "value": "Other", "group": "seo"},
                      headers=admin["headers"])
    assert res.status_code == 422


def test_settings_by_group_and_bulk_update(client, admin):
    for key, value, group in (("site_name", "Boiler Shop", "general"), ("meta_title", "Boilers", "seo"),
                              ("meta_keywords", "combi", "seo")):
        client.post("/admin/settings", json={"key": key, "value": value, "group": group}, headers=admin["headers"])

    props = client.get("/admin/settings", params={"group": "seo"}, headers=admin["headers"]).json()["props"]
    assert [s["key"] for s in props["settings"]["data"]] == ["meta_keywords", "meta_title"]
    assert props["groups"] == ["general", "seo"]

    res = client.post("/admin/settings/bulk", json={"settings": {"meta_title": "Combi Boilers", "missing": "x"}},
                      headers=admin["headers"])
    assert res.json()["count"] == 1
    res = client.get("/admin/settings/group/seo", headers=admin["headers"])
    assert res.json() == {"group": "seo", "settings": {"meta_title": "Combi Boilers", "meta_keywords": "combi"}}


def test_setting_update_and_delete(client, admin):
    setting_id = client.post("/admin/settings", json={"key": "currency", "value": "GBP"}, headers=admin["headers"]).json()["id"]
    res = client.put(f"/admin/settings/{setting_id}", json={"value": "EUR", "group": "store"}, headers=admin["headers"])
    assert res.json()["redirect"] == "/admin/settings?group=store"
    assert database.db["setting"].find_one()["value"] == "EUR"

    client.delete(f"/admin/settings/{setting_id}", headers=admin["headers"])
    assert database.db["setting"].count_documents({}) == 0
