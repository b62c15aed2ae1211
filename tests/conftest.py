"""Pytest fixtures for bloomshop tests."""

import itertools
from datetime import date, timedelta
from types import SimpleNamespace

import jwt
import mongomock
import pytest
import stripe
from fastapi.testclient import TestClient

import database
from config import settings
from schemas import PickupLocation


@pytest.fixture(autouse=True)
def db(monkeypatch):
    """Fresh in-memory database for every test."""
    mdb = mongomock.MongoClient()["bloomshop_test"]
    monkeypatch.setattr(database, "db", mdb)
    return mdb


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Development mode, no webhook secret, no printer."""
    monkeypatch.setattr(settings, "app_env", "development")
    monkeypatch.setattr(settings, "stripe_webhook_secrets", [])
    monkeypatch.setattr(settings, "printnode_api_key", "")
    monkeypatch.setattr(settings, "jwt_audience", "")
    monkeypatch.setattr(settings, "jwt_secret", "test-secret")
    return settings


@pytest.fixture
def production(monkeypatch):
    monkeypatch.setattr(settings, "app_env", "production")
    monkeypatch.setattr(settings, "stripe_webhook_secrets", ["whsec_test"])
    return settings


@pytest.fixture
def client():
    from main import app

    return TestClient(app)


def _insert_user(db, sub, role, email):
    doc = {"externalId": sub, "email": email, "name": sub, "role": role, "isActive": True}
    doc["_id"] = db["user"].insert_one(dict(doc)).inserted_id
    return doc


def auth_headers(user):
    token = jwt.encode({"sub": user["externalId"], "email": user["email"]}, settings.jwt_secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer(db):
    return _insert_user(db, "cust-a", "customer", "ana@fleurs.ca")


@pytest.fixture
def other_customer(db):
    return _insert_user(db, "cust-b", "customer", "ben@fleurs.ca")


@pytest.fixture
def owner(db):
    return _insert_user(db, "owner-a", "shop_owner", "owner@fleurs.ca")


@pytest.fixture
def other_owner(db):
    return _insert_user(db, "owner-b", "shop_owner", "rival@fleurs.ca")


@pytest.fixture
def admin(db):
    return _insert_user(db, "admin", "admin", "admin@fleurs.ca")


def _insert_shop(db, owner, name, **overrides):
    doc = {
        "name": name,
        "ownerId": str(owner["_id"]),
        "currency": "CAD",
        "taxRate": 0.14975,
        "deliveryOptions": {"pickup": True, "delivery": True, "deliveryRadius": 10, "deliveryFee": 0},
        "isActive": True,
    }
    doc.update(overrides)
    doc["_id"] = db["shop"].insert_one(dict(doc)).inserted_id
    return doc


@pytest.fixture
def shop(db, owner):
    return _insert_shop(db, owner, "Fleurs du Plateau")


@pytest.fixture
def other_shop(db, other_owner):
    return _insert_shop(db, other_owner, "Rival Roses")


def _insert_product(db, shop, name="Spring Bouquet", price=2500, stock=10, **overrides):
    doc = {
        "shopId": str(shop["_id"]),
        "name": name,
        "color": "pink",
        "variants": [
            {"tierName": "standard", "price": price, "stock": stock, "images": [], "isActive": True},
            {"tierName": "deluxe", "price": price + 1500, "stock": 5, "images": [], "isActive": True},
        ],
        "price": {"standard": 0, "deluxe": 0, "premium": 0},
        "productTypes": ["bouquet"],
        "occasions": ["birthday"],
        "isActive": True,
        "isBestSeller": False,
        "sortOrder": 0,
    }
    doc.update(overrides)
    doc["_id"] = db["product"].insert_one(dict(doc)).inserted_id
    return doc


@pytest.fixture
def product(db, shop):
    return _insert_product(db, shop)


@pytest.fixture
def make_product(db):
    def factory(shop, **kwargs):
        return _insert_product(db, shop, **kwargs)

    return factory


def _insert_pickup_location(db, shop, name="Plateau counter", **overrides):
    doc = PickupLocation(
        name=name,
        shopId=str(shop["_id"]),
        address={"street": "4500 Rue Saint-Denis", "city": "Montreal", "province": "QC", "postalCode": "H2J 2L3"},
        location={"coordinates": [-73.5826, 45.5236]},
        phone="514-555-0142",
    ).model_dump()
    doc.update(overrides)
    doc["_id"] = db["pickuplocation"].insert_one(dict(doc)).inserted_id
    return doc


@pytest.fixture
def pickup_location(db, shop):
    return _insert_pickup_location(db, shop)


@pytest.fixture
def make_pickup_location(db):
    def factory(shop, **kwargs):
        return _insert_pickup_location(db, shop, **kwargs)

    return factory


def future_date(days=3):
    return (date.today() + timedelta(days=days)).isoformat()


def checkout_payload(shop, product, quantity=2, method="pickup", postal_code="H2X 1Y4"):
    delivery = {
        "method": method,
        "date": future_date(),
        "time": "14:00",
        "contactPhone": "514-555-0101",
        "contactEmail": "ana@fleurs.ca",
    }
    if method == "delivery":
        delivery["address"] = {
            "street": "123 Rue Saint-Denis",
            "city": "Montreal",
            "province": "QC",
            "postalCode": postal_code,
        }
    return {
        "shopId": str(shop["_id"]),
        "items": [{"productId": str(product["_id"]), "quantity": quantity}],
        "delivery": delivery,
        "recipient": {"name": "Marie Tremblay", "phone": "514-555-0199", "email": "marie@fleurs.ca"},
        "occasion": "birthday",
        "cardMessage": "Bonne fête!",
    }


@pytest.fixture
def stripe_sessions(monkeypatch):
    """Replace Stripe session calls; returns the list of created session params."""
    created = []
    counter = itertools.count(1)

    def fake_create(**params):
        session_id = f"cs_test_{next(counter)}"
        created.append(dict(params, id=session_id))
        return SimpleNamespace(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    def fake_retrieve(session_id, **kwargs):
        match = next((s for s in created if s["id"] == session_id), None)
        return SimpleNamespace(
            id=session_id,
            status="complete",
            payment_status="paid",
            amount_total=match and sum(i["price_data"]["unit_amount"] * i["quantity"] for i in match["line_items"]),
            currency="cad",
            customer_email=match and match["customer_email"],
        )

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)
    return created
