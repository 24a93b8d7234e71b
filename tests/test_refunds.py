import pytest
from bson import ObjectId


@pytest.fixture
def order(client, customer, make_product):
    product = make_product(original_price=2000000, stock=10)
    body = {
        "full_name": "Tran Thi B",
        "email": "buyer@example.com",
        "address": "Hue",
        "phone": "0933333333",
        "items": [{"product_id": product["id"], "quantity": 3}],
    }
    data = client.post("/orders", json=body, headers=customer["headers"]).json()["data"]
    data["product_id"] = product["id"]
    return data


def _refund(client, user, order, quantity, product_id=None):
    body = {
        "order_id": order["id"],
        "products": [{"product_id": product_id or order["product_id"], "quantity": quantity}],
        "reason": "Dead on arrival",
    }
    return client.post("/refunds", json=body, headers=user["headers"])


def test_create_refund(client, customer, order):
    res = _refund(client, customer, order, 2)
    assert res.status_code == 201
    refund = res.json()["data"]
    assert refund["status"] == "pending"
    assert refund["user_id"] == customer["id"]
    assert refund["products"] == [{"product_id": order["product_id"], "quantity": 2}]


def test_refund_quantity_is_cumulative(client, customer, order):
    assert _refund(client, customer, order, 2).status_code == 201
    res = _refund(client, customer, order, 2)
    assert res.status_code == 400
    assert res.json()["message"].startswith("Invalid quantity")
    assert _refund(client, customer, order, 1).status_code == 201


def test_rejected_refunds_free_their_quantity(client, admin, customer, order):
    refund = _refund(client, customer, order, 3).json()["data"]
    client.patch(f"/refunds/{refund['id']}/reject", json={}, headers=admin["headers"])
    assert _refund(client, customer, order, 3).status_code == 201


def test_refund_validation(client, customer, order):
    assert _refund(client, customer, order, 0).status_code == 400
    assert _refund(client, customer, order, 4).status_code == 400
    res = _refund(client, customer, order, 1, product_id="0" * 24)
    assert res.status_code == 400
    assert "not found in the order" in res.json()["message"]


def test_refund_for_someone_elses_order(client, make_user, order):
    stranger = make_user(email="stranger@example.com")
    res = _refund(client, stranger, order, 1)
    assert res.status_code == 404


def test_approve_updates_order_and_emails_user(client, db, admin, customer, order, outbox):
    refund = _refund(client, customer, order, 1).json()["data"]

    res = client.patch(f"/refunds/{refund['id']}/approve", json={"admin_notes": "Ship it back"},
                       headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "approved"
    assert res.json()["data"]["admin_notes"] == "Ship it back"

    assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "refund_approved"
    mail = outbox[-1]
    assert mail["to"] == customer["email"]
    assert mail["template"] == "refund-approved"
    assert mail["refund_id"] == refund["id"]


def test_reject_updates_order(client, db, admin, customer, order, outbox):
    refund = _refund(client, customer, order, 1).json()["data"]
    client.patch(f"/refunds/{refund['id']}/reject", headers=admin["headers"])
    assert db["order"].find_one({"_id": ObjectId(order["id"])})["status"] == "refund_rejected"
    assert outbox[-1]["template"] == "refund-rejected"


def test_only_pending_refunds_can_be_decided(client, admin, customer, order):
    refund = _refund(client, customer, order, 1).json()["data"]
    client.patch(f"/refunds/{refund['id']}/approve", headers=admin["headers"])

    res = client.patch(f"/refunds/{refund['id']}/reject", headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Only pending refund requests can be rejected"


def test_customer_cannot_decide(client, customer, order):
    refund = _refund(client, customer, order, 1).json()["data"]
    assert client.patch(f"/refunds/{refund['id']}/approve", headers=customer["headers"]).status_code == 403


def test_completion_restores_stock(client, db, admin, customer, order):
    refund = _refund(client, customer, order, 2).json()["data"]
    before = db["product"].find_one({"_id": ObjectId(order["product_id"])})["stock"]

    res = client.patch(f"/refunds/{refund['id']}/status", json={"status": "completed"}, headers=admin["headers"])
    assert res.status_code == 400

    client.patch(f"/refunds/{refund['id']}/approve", headers=admin["headers"])
    res = client.patch(f"/refunds/{refund['id']}/status", json={"status": "processing"}, headers=admin["headers"])
    assert res.json()["data"]["status"] == "processing"
    res = client.patch(f"/refunds/{refund['id']}/status", json={"status": "completed"}, headers=admin["headers"])
    assert res.json()["data"]["status"] == "completed"

    assert db["product"].find_one({"_id": ObjectId(order["product_id"])})["stock"] == before + 2

    res = client.patch(f"/refunds/{refund['id']}/status", json={"status": "completed"}, headers=admin["headers"])
    assert res.status_code == 400


def test_refund_listings(client, admin, customer, order):
    _refund(client, customer, order, 1)

    mine = client.get("/refunds/my", headers=customer["headers"]).json()["data"]
    assert len(mine) == 1

    everything = client.get("/refunds", headers=admin["headers"]).json()["data"]
    assert everything[0]["user"]["email"] == customer["email"]
    assert client.get("/refunds", headers=customer["headers"]).status_code == 403


def test_unpaid_banking_order_cannot_be_refunded(client, db, customer, make_product):
    product = make_product(stock=5)
    body = {
        "full_name": "Tran Thi B",
        "email": "buyer@example.com",
        "address": "Hue",
        "phone": "0933333333",
        "items": [{"product_id": product["id"], "quantity": 3}],
        "payment": "banking",
    }
    unpaid = client.post("/orders", json=body, headers=customer["headers"]).json()["data"]
    unpaid["product_id"] = product["id"]

    res = _refund(client, customer, unpaid, 3)
    assert res.status_code == 400
    assert res.json()["message"] == "Only fulfilled orders can be refunded"
    stored = db["product"].find_one({"_id": ObjectId(product["id"])})
    assert (stored["stock"], stored["sold_count"]) == (5, 0)


def test_refunded_quantities_are_held_on_the_order(client, db, admin, customer, order):
    refund = _refund(client, customer, order, 2).json()["data"]
    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["refunded_quantities"] == {order["product_id"]: 2}

    client.patch(f"/refunds/{refund['id']}/reject", headers=admin["headers"])
    stored = db["order"].find_one({"_id": ObjectId(order["id"])})
    assert stored["refunded_quantities"] == {order["product_id"]: 0}


def test_refund_respects_units_claimed_by_a_concurrent_request(client, db, customer, order):
    # another request already claimed every unit but its refund is not visible yet
    db["order"].update_one({"_id": ObjectId(order["id"])},
                           {"$set": {f"refunded_quantities.{order['product_id']}": 3}})
    res = _refund(client, customer, order, 1)
    assert res.status_code == 400
    assert db["refundrequest"].count_documents({}) == 0
