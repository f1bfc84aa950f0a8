from datetime import datetime

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main

PASSWORD = "pharma-pass"
PASSWORD_HASH = main.hash_password(PASSWORD)


@pytest.fixture
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["pharma-care-test"]
    monkeypatch.setattr(main, "db", test_db)
    monkeypatch.setattr(database, "db", test_db)
    database.ensure_indexes(test_db)
    return test_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


def auth_headers(email):
    return {"Authorization": f"Bearer {main.create_access_token({'sub': email})}"}


def add_user(mongo, email, role="user", name=None):
    mongo["users"].insert_one({
        "email": email,
        "role": role,
        "name": name,
        "password_hash": PASSWORD_HASH,
        "created_at": datetime(2024, 1, 1),
    })
    return auth_headers(email)


def add_medicine(mongo, name, price, seller="seller@pharmacare.com", category="Tablet", **extra):
    doc = {"name": name, "price": price, "category": category, "seller": {"email": seller}, "created_at": datetime(2024, 1, 1)}
    doc.update(extra)
    return mongo["medicines"].insert_one(doc).inserted_id


def add_order(mongo, email, lines, status="requested", when=None, transaction_id="txn"):
    """lines: [(medicine_id, quantity, seller_email)]"""
    doc = {
        "email": email,
        "items": [{"medicineId": m, "quantity": q, "seller": s} for m, q, s in lines],
        "status": status,
        "transactionId": transaction_id,
        "orderDate": when or datetime(2024, 1, 15),
    }
    return mongo["orders"].insert_one(doc).inserted_id


@pytest.fixture
def admin(mongo):
    return add_user(mongo, "admin@pharmacare.com", "admin", "Admin")


@pytest.fixture
def seller(mongo):
    return add_user(mongo, "seller@pharmacare.com", "seller", "Seller")


@pytest.fixture
def customer(mongo):
    return add_user(mongo, "buyer@pharmacare.com", "user", "Buyer")
