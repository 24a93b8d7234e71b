import os

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["EMAIL_USER"] = ""
os.environ["BANK_ACCOUNT_NO"] = "0123456789"
os.environ["BANK_ACCOUNT_NAME"] = "PC SHOP"

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import mailer
import main
import media
from schemas import User
from security import create_token, hash_password


@pytest.fixture(autouse=True)
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["pc_shop_test"]
    monkeypatch.setattr(database, "db", mock_db)
    database.ensure_indexes()
    return mock_db


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    sent = []

    def fake_notify(to, template, **context):
        sent.append({"to": to, "template": template, **context})
        return True

    monkeypatch.setattr(mailer, "notify", fake_notify)
    return sent


@pytest.fixture(autouse=True)
def deleted_images(monkeypatch):
    deleted = []

    def fake_delete(public_id):
        deleted.append(public_id)
        return True

    monkeypatch.setattr(media, "delete_image", fake_delete)
    return deleted


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def make_user():
    def _make(email="user@example.com", password="secret", role="USER", points=0, is_active=True):
        user = User(name=email.split("@")[0], email=email, password=hash_password(password),
                    role=role, points=points, is_active=is_active, phone="0900000000", address="Hanoi")
        user_id = database.create_document("user", user)
        token = create_token({"id": user_id, "email": email, "role": role})
        return {"id": user_id, "email": email, "headers": {"Authorization": f"Bearer {token}"}}
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="ADMIN")


@pytest.fixture
def customer(make_user):
    return make_user(email="customer@example.com")


@pytest.fixture
def catalog(client, admin):
    category = client.post("/categories", json={"name": "Processors", "type": "cpu"},
                           headers=admin["headers"]).json()["data"]
    manufacturer = client.post("/manufacturers", json={"name": "AMD", "type": "cpu"},
                               headers=admin["headers"]).json()["data"]
    return {"category_id": category["id"], "manufacturer_id": manufacturer["id"]}


@pytest.fixture
def make_product(client, admin, catalog):
    def _make(name="Ryzen 5 7600", original_price=5000000, discount=0, stock=10, **extra):
        body = {
            "name": name,
            "type": "cpu",
            "original_price": original_price,
            "discount": discount,
            "stock": stock,
            **catalog,
            **extra,
        }
        res = client.post("/products", json=body, headers=admin["headers"])
        assert res.status_code == 201, res.json()
        return res.json()["data"]
    return _make
