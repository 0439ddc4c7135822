from datetime import datetime

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main

ADMIN_EMAIL = "admin@atozdpolify.com"
ADMIN_PASSWORD = "s3cret-admin"

NOW = datetime(2024, 6, 10, 12, 0, tzinfo=main.STORE_TZ)


@pytest.fixture
def mongo(monkeypatch):
    mock_db = mongomock.MongoClient().db
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(main, "db", mock_db)
    return mock_db


@pytest.fixture
def client(mongo, monkeypatch):
    monkeypatch.setattr(main, "ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setattr(main, "ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setattr(main, "STRIPE_SECRET", None)
    monkeypatch.setattr(main, "store_now", lambda: NOW)
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers(client):
    res = client.post("/auth/register", json={"name": "Asha", "email": "asha@example.com", "password": "hunter22"})
    assert res.status_code == 200
    return auth(res.json()["token"])


@pytest.fixture
def admin_headers(client):
    res = client.post("/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 200
    return auth(res.json()["token"])


def make_product(client, admin_headers, **overrides):
    payload = {"name": "Desk Lamp", "price": 250.0, "category": "Home Decor", "product_type": "physical"}
    payload.update(overrides)
    res = client.post("/admin/products", json=payload, headers=admin_headers)
    assert res.status_code == 200, res.text
    return res.json()["id"]


def make_coupon(client, admin_headers, **overrides):
    payload = {"code": "save10", "discount": 10, "min_amount": 500, "valid_till": "2024-06-30", "max_uses": 5}
    payload.update(overrides)
    res = client.post("/admin/coupons", json=payload, headers=admin_headers)
    assert res.status_code == 200, res.text
    return res.json()["id"]


ADDRESS = {
    "name": "Asha Rao",
    "email": "asha@example.com",
    "phone": "+91 98765 43210",
    "address_line": "12 MG Road, Indiranagar",
    "state": "Karnataka",
    "zip_code": "560038",
}
