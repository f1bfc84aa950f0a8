from bson import ObjectId

from conftest import add_medicine, auth_headers


def add(client, headers, medicine_id, quantity=1):
    return client.post("/carts", json={"medicineId": str(medicine_id), "quantity": quantity}, headers=headers)


def test_adding_same_medicine_twice_increments(client, mongo, customer):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    assert add(client, customer, medicine_id).json()["quantity"] == 1
    res = add(client, customer, medicine_id, 2)
    assert res.status_code == 200
    assert res.json()["quantity"] == 3
    assert mongo["carts"].count_documents({"email": "buyer@pharmacare.com"}) == 1


def test_carts_are_scoped_per_customer(client, mongo, customer):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    add(client, customer, medicine_id)
    add(client, auth_headers("other@pharmacare.com"), medicine_id)
    assert mongo["carts"].count_documents({}) == 2


def test_add_unknown_medicine(client, mongo, customer):
    assert add(client, customer, ObjectId()).status_code == 404
    assert add(client, customer, "nope").status_code == 400


def test_get_cart_attaches_medicine(client, mongo, customer):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    add(client, customer, medicine_id, 2)
    res = client.get("/carts", params={"email": "buyer@pharmacare.com"}, headers=customer)
    assert res.status_code == 200
    rows = res.json()
    assert len(rows) == 1
    assert rows[0]["quantity"] == 2
    assert rows[0]["medicine"]["name"] == "Napa"


def test_get_someone_elses_cart_forbidden(client, mongo, customer):
    res = client.get("/carts", params={"email": "other@pharmacare.com"}, headers=customer)
    assert res.status_code == 403


def test_increment_and_decrement(client, mongo, customer):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    item_id = add(client, customer, medicine_id).json()["id"]
    assert client.patch(f"/carts/{item_id}", headers=customer).json()["quantity"] == 2
    res = client.patch(f"/carts/{item_id}", params={"decrement": "true"}, headers=customer)
    assert res.json()["quantity"] == 1


def test_decrement_below_one_refused(client, mongo, customer):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    item_id = add(client, customer, medicine_id).json()["id"]
    res = client.patch(f"/carts/{item_id}", params={"decrement": "true"}, headers=customer)
    assert res.status_code == 400
    assert mongo["carts"].find_one({"_id": ObjectId(item_id)})["quantity"] == 1


def test_patch_missing_item(client, mongo, customer):
    res = client.patch(f"/carts/{ObjectId()}", params={"decrement": "true"}, headers=customer)
    assert res.status_code == 404


def test_cannot_touch_another_customers_item(client, mongo, customer):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    item_id = add(client, customer, medicine_id).json()["id"]
    intruder = auth_headers("other@pharmacare.com")
    assert client.patch(f"/carts/{item_id}", headers=intruder).status_code == 404
    assert client.delete(f"/carts/{item_id}", headers=intruder).status_code == 404


def test_remove_item(client, mongo, customer):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    item_id = add(client, customer, medicine_id).json()["id"]
    assert client.delete(f"/carts/{item_id}", headers=customer).json() == {"ok": True}
    assert mongo["carts"].count_documents({}) == 0


def test_clear_cart(client, mongo, customer):
    add(client, customer, add_medicine(mongo, "Napa", 10.0))
    add(client, customer, add_medicine(mongo, "Seclo", 5.0))
    res = client.delete("/carts/clear/buyer@pharmacare.com", headers=customer)
    assert res.json() == {"deletedCount": 2}
    assert client.delete("/carts/clear/other@pharmacare.com", headers=customer).status_code == 403


def test_cart_requires_token(client, mongo):
    medicine_id = add_medicine(mongo, "Napa", 10.0)
    assert client.post("/carts", json={"medicineId": str(medicine_id)}).status_code == 401


def test_medicine_id_letter_case_shares_one_row(client, mongo, customer):
    medicine_id = str(add_medicine(mongo, "Napa", 10.0))
    add(client, customer, medicine_id)
    res = add(client, customer, medicine_id.upper())
    assert res.json()["quantity"] == 2
    assert mongo["carts"].count_documents({}) == 1
    rows = client.get("/carts", params={"email": "buyer@pharmacare.com"}, headers=customer).json()
    assert rows[0]["medicineId"] == medicine_id
    assert rows[0]["medicine"]["name"] == "Napa"
