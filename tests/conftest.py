from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient
from mongomock.collection import Collection

from database import ensure_indexes, get_db
from main import app
from schemas import AuthUser


@pytest.fixture
def db():
    database = mongomock.MongoClient().storefront
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(name="Chlorine Tablets 1kg", price=100.0, stock=5, category_id="pool-chemicals"):
        doc = {"name": name, "price": price, "stock": stock, "category_id": category_id,
               "image_url": None, "description": ""}
        return str(db["products"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(full_name="Juan Dela Cruz", metadata=None, phone="0915 736 2648"):
        counter["n"] += 1
        email = f"shopper{counter['n']}@tropicspools.com"
        doc = {"email": email, "full_name": full_name, "phone": phone, "metadata": metadata or {}}
        uid = db["users"].insert_one(doc).inserted_id
        return AuthUser(id=str(uid), email=email, metadata=metadata or {})
    return _make


@pytest.fixture
def put_line(db):
    """Insert a cart row directly, skipping the add-to-cart stock check."""
    clock = {"t": datetime(2026, 1, 1, tzinfo=timezone.utc)}

    def _put(user, product_id, quantity):
        clock["t"] += timedelta(minutes=1)
        doc = {"user_id": user.id, "product_id": product_id, "quantity": quantity, "added_at": clock["t"]}
        return str(db["cart_items"].insert_one(doc).inserted_id)
    return _put


@pytest.fixture
def fail_on(monkeypatch):
    """Make one Collection method raise for one collection name."""
    def _fail(collection_name, method_name, exc):
        original = getattr(Collection, method_name)

        def wrapper(self, *args, **kwargs):
            if self.name == collection_name:
                raise exc
            return original(self, *args, **kwargs)
        monkeypatch.setattr(Collection, method_name, wrapper)
    return _fail


@pytest.fixture
def auth_headers(client):
    client.post("/auth/register", json={
        "email": "maria@tropicspools.com",
        "password": "secret123",
        "full_name": "Maria Santos",
        "phone": "0915 111 2222",
    })
    res = client.post("/auth/login", json={"email": "maria@tropicspools.com", "password": "secret123"})
    return {"Authorization": f"Bearer {res.json()['access_token']}"}
