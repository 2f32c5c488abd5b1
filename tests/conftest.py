"""Pytest fixtures for the order engine tests."""

import random
from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId

from database import ensure_indexes, utcnow
from services import OrderService

# Whole seconds keep comparisons stable once dates round-trip through BSON.
NOW = utcnow().replace(microsecond=0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def mongo_db():
    """In-memory MongoDB database with the engine's indexes."""
    client = mongomock.MongoClient()
    db = client["order_engine_test"]
    ensure_indexes(db)
    yield db
    client.close()


@pytest.fixture
def service(mongo_db):
    return OrderService(mongo_db, rng=random.Random(7))


@pytest.fixture
def add_product(mongo_db):
    """Insert a catalog product."""

    def _add(product_id, price, name=None, brand="Zyra", image=None):
        mongo_db["product"].insert_one({
            "id": product_id,
            "name": name or f"Product {product_id}",
            "brand": brand,
            "price": price,
            "image": image or f"/img/{product_id}.jpg",
        })
        return product_id

    return _add


@pytest.fixture
def add_user(mongo_db):
    """Insert a user and return its id as a string."""

    def _add(email="buyer@example.com", first_name="Asha", last_name="Rao"):
        oid = ObjectId()
        mongo_db["user"].insert_one({
            "_id": oid,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
        })
        return str(oid)

    return _add


@pytest.fixture
def fill_cart(mongo_db):
    """Replace a user's cart with ``items`` as (product_id, quantity) pairs."""

    def _fill(user_id, items, coupon_code=None):
        doc = {
            "user_id": user_id,
            "items": [
                {"product_id": pid, "quantity": qty, "size": "M"} for pid, qty in items
            ],
            "applied_coupon": {"code": coupon_code} if coupon_code else None,
        }
        mongo_db["cart"].replace_one({"user_id": user_id}, doc, upsert=True)

    return _fill


@pytest.fixture
def add_coupon(mongo_db):
    """Insert a coupon valid from a month ago to a month from now."""

    def _add(code, discount_type="percentage", discount_value=10, **overrides):
        doc = {
            "code": code,
            "description": f"{code} offer",
            "discount_type": discount_type,
            "discount_value": discount_value,
            "minimum_order_value": 0,
            "maximum_discount": None,
            "usage_limit": None,
            "used_count": 0,
            "valid_from": NOW - timedelta(days=30),
            "valid_to": NOW + timedelta(days=30),
            "is_active": True,
            "used_by": [],
        }
        doc.update(overrides)
        mongo_db["coupon"].insert_one(doc)
        return code

    return _add


@pytest.fixture
def buyer(add_user):
    return add_user()
