import mongomock
import pytest
from fastapi.testclient import TestClient

import accounts
import cache
import catalog
import database
from main import app
from security import create_access_token


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database.ensure_indexes(client["license_store_test"])
    return client["license_store_test"]


@pytest.fixture
def response_cache():
    return cache.ResponseCache()


@pytest.fixture
def client(db, response_cache):
    app.dependency_overrides[database.optional_db] = lambda: db
    app.dependency_overrides[cache.get_cache] = lambda: response_cache
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(username="acme", tenant_id="eur", role="b2b_user", password="secret-pass"):
        return accounts.register_user(
            db, username=username, email=f"{username}@example.com",
            password=password, tenant_id=tenant_id, role=role,
        )
    return _make


@pytest.fixture
def auth():
    def _headers(user, tenant=None):
        headers = {"Authorization": f"Bearer {create_access_token({'sub': user['id']})}"}
        if tenant:
            headers["X-Tenant"] = tenant
        return headers
    return _headers


@pytest.fixture
def buyer(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user("backoffice", role="admin")


@pytest.fixture
def make_product(db):
    def _make(sku="OFF-2021", name="Office 2021", price="10.00", keys=5, **extra):
        product = catalog.create_product(db, dict(sku=sku, name=name, price=price, **extra))
        if keys:
            catalog.add_keys(db, product["id"], [f"{sku}-KEY-{i:03d}" for i in range(keys)])
        return product
    return _make
