"""
Pytest configuration: an in-memory MongoDB (mongomock) injected into the app.
"""

import mongomock
import pytest
from fastapi.testclient import TestClient

import security
from config import Settings
from database import Database
from main import create_app

from .helpers import create_restaurant, register


@pytest.fixture(scope="session", autouse=True)
def fast_hashing():
    # Full-cost bcrypt makes every registration slow
    security.pwd_context.update(bcrypt__rounds=4)
    yield


@pytest.fixture
def settings():
    return Settings(
        MONGO_URI="mongodb://localhost:27017",
        MONGO_DB_NAME="reservations_test",
        JWT_SECRET="test-secret",
        RATE_LIMIT_ENABLED=False,
        SWAGGER_USER="docs",
        SWAGGER_PASSWORD="docs-pass",
        LOG_LEVEL="WARNING",
    )


@pytest.fixture
def mongo_client():
    return mongomock.MongoClient()


@pytest.fixture
def db(mongo_client, settings):
    """Connected store for service-level tests."""
    database = Database(settings.mongo_uri, settings.mongo_db_name, client=mongo_client).connect()
    yield database
    database.close()


@pytest.fixture
def app(settings, mongo_client):
    return create_app(settings, client=mongo_client)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def user(client):
    return register(client, "user@example.com")


@pytest.fixture
def other_user(client):
    return register(client, "other@example.com")


@pytest.fixture
def admin(client):
    return register(client, "admin@example.com", role="admin")


@pytest.fixture
def restaurant(client, admin):
    return create_restaurant(client, admin)
