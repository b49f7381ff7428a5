import mongomock
import pytest
from fastapi.testclient import TestClient

from database import create_document, get_db
from main import app, pwd_context
from schemas import ROLE_ADMIN

ADMIN_EMAIL = "admin@bookstore.vn"


@pytest.fixture
def db():
    return mongomock.MongoClient()["bookstore_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(db):
    db["users"].insert_one({
        "_id": ADMIN_EMAIL,
        "name": "Admin",
        "email": ADMIN_EMAIL,
        "password_hash": pwd_context.hash("secret123"),
        "role": ROLE_ADMIN,
    })
    return {"X-User-Email": ADMIN_EMAIL}


@pytest.fixture
def make_book(db):
    def _make(title="Dế Mèn phiêu lưu ký", price=85000.0, **extra):
        doc = {"title": title, "author": "Tô Hoài", "category": "Thiếu nhi", "price": price, "rating": 0.0, **extra}
        return create_document("books", doc, database=db)
    return _make


@pytest.fixture
def make_order(db):
    def _make(items, status="APPROVED", user_email="reader@example.com", reviewed=False):
        doc = {
            "user_email": user_email,
            "phone": "0900000000",
            "address": "1 Lê Lợi, Q1",
            "payment_method": "COD",
            "items": items,
            "total_amount": sum(it["price"] * it["quantity"] for it in items),
            "status": status,
            "reviewed": reviewed,
        }
        return create_document("orders", doc, database=db)
    return _make
