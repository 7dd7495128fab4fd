"""Pytest fixtures for storefront tests."""

import time

import fakeredis
import mongomock
import pytest
from fastapi.testclient import TestClient

from storefront.auth import sign_init_data
from storefront.config import Settings
from storefront.main import create_app

BOT_TOKEN = "123456:TEST-BOT-TOKEN"


@pytest.fixture
def settings():
    return Settings(
        telegram_bot_token=BOT_TOKEN,
        telegram_bot_username="storefront_bot",
        secret_key="test-secret",
        admin_email="admin@demo.com",
        admin_password="admin123",
        log_level="WARNING",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def app(settings, db, redis_client):
    return create_app(settings, db=db, redis_client=redis_client)


@pytest.fixture
def client(app):
    """Test client with startup hooks (indexes, admin bootstrap) applied."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_init_data():
    """Build signed Telegram init data for a given user."""

    def _make(telegram_id=1001, first_name="Alice", auth_date=None, bot_token=BOT_TOKEN, **user_fields):
        user = {"id": telegram_id, "first_name": first_name, "language_code": "en", **user_fields}
        fields = {
            "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
            "user": user,
            "auth_date": auth_date if auth_date is not None else int(time.time()),
        }
        return sign_init_data(fields, bot_token)

    return _make


@pytest.fixture
def login(client, make_init_data):
    """Log a Telegram user in and return auth headers for them."""

    def _login(telegram_id=1001, first_name="Alice"):
        response = client.post("/auth/telegram", json={"initData": make_init_data(telegram_id, first_name)})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    return _login


@pytest.fixture
def auth_headers(login):
    return login()


@pytest.fixture
def admin_headers(client):
    response = client.post("/admin/auth/login", json={"email": "admin@demo.com", "password": "admin123"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def make_product(app):
    """Insert a product straight through the catalog service."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "name": f"Test Product {counter['n']}",
            "description": "A product used in tests",
            "price": 10.0,
            "currency": "USD",
            "stock": 5,
            "trackStock": True,
            "images": ["https://cdn.example.com/p.png"],
        }
        data.update(overrides)
        return app.state.catalog.create_product(data)

    return _make


@pytest.fixture
def shipping_address():
    return {
        "firstName": "Alice",
        "lastName": "Smith",
        "address1": "1 Main St",
        "city": "Springfield",
        "postalCode": "12345",
        "country": "US",
        "phone": "+15550100",
    }


@pytest.fixture
def order_payload(shipping_address):
    def _payload(items, **extra):
        body = {"items": items, "currency": "USD", "shippingAddress": shipping_address}
        body.update(extra)
        return body

    return _payload
