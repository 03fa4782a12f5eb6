"""
Test configuration: an in-memory MongoDB (mongomock), a fixed clock and an
API client whose database and shop dependencies are overridden.
"""

from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from main import app, get_db, get_shop

SHOP_ID = "shop-0001"
OTHER_SHOP_ID = "shop-0002"

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db():
    """Fresh database per test, with the production indexes."""
    client = mongomock.MongoClient()
    test_db = client["shopsmart_test"]
    database.ensure_indexes(test_db)
    yield test_db
    client.close()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_shop] = lambda: SHOP_ID

    yield TestClient(app)

    app.dependency_overrides.clear()
