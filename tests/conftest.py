# tests/conftest.py
# ---------------------------------------------------------------------
# Ground rules:
# - every test gets a fresh in-memory mongomock database patched into `database`
# - transactions are disabled (mongomock has no sessions); the flows still run
#   their read-validate-write logic with session=None
# - admin/operator users plus bearer headers for API tests
# - small factories for catalog and registry records
# ---------------------------------------------------------------------
import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from security import create_token, hash_password, public_user

PASSWORD = "secret123"


@pytest.fixture
def mongo(monkeypatch):
    client = mongomock.MongoClient()
    test_db = client["workshop_test"]
    monkeypatch.setattr(database, "client", client)
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(database, "TRANSACTIONS_ENABLED", False)
    return test_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


def _insert_user(db, name, email, role):
    doc = {
        "name": name,
        "email": email,
        "password_hash": hash_password(PASSWORD),
        "role": role,
        "is_active": True,
    }
    doc["_id"] = db.user.insert_one(dict(doc)).inserted_id
    return doc


@pytest.fixture
def admin(mongo):
    return _insert_user(mongo, "Ana Admin", "admin@oficina.com.br", "admin")


@pytest.fixture
def operator(mongo):
    return _insert_user(mongo, "Otto Operator", "operator@oficina.com.br", "operator")


@pytest.fixture
def admin_user(admin):
    return public_user(admin)


@pytest.fixture
def operator_user(operator):
    return public_user(operator)


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {create_token(admin)}"}


@pytest.fixture
def operator_headers(operator):
    return {"Authorization": f"Bearer {create_token(operator)}"}


@pytest.fixture
def make_product(mongo):
    def _make(name="Oil filter", stock=10, cost_price=20.0, sale_price=35.0, kind="part", **extra):
        doc = {
            "name": name,
            "sku": extra.pop("sku", None),
            "cost_price": cost_price,
            "sale_price": sale_price,
            "stock": stock,
            "min_stock": extra.pop("min_stock", None),
            "kind": kind,
            "track_stock": extra.pop("track_stock", kind == "part"),
            **extra,
        }
        return str(mongo.product.insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def make_customer(mongo):
    def _make(name="Carla Cliente", owner_id=None):
        return str(mongo.customer.insert_one({"name": name, "phone": "11 99999-0000", "owner_id": owner_id}).inserted_id)
    return _make


@pytest.fixture
def make_supplier(mongo):
    def _make(name="Auto Parts Ltda", owner_id=None):
        return str(mongo.supplier.insert_one({"name": name, "owner_id": owner_id}).inserted_id)
    return _make


def stock_of(db, product_id):
    return db.product.find_one({"_id": database.oid(product_id)})["stock"]
