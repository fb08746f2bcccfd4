import pytest
from fastapi.testclient import TestClient
from jose import jwt

import auth_utils
import schemas
import storage
from config import Settings
from main import create_app

ADMIN_ID = "admin-sub-1"
IDP_SECRET = "idp-test-secret"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'agrimarket.db'}",
        secret_key="session-test-secret",
        idp_secret_key=IDP_SECRET,
        admin_users=[ADMIN_ID],
        upload_dir=str(tmp_path / "uploads"),
        max_upload_bytes=1024,
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    yield app
    app.state.engine.dispose()


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
def anon_client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def client_for(app, settings, db):
    """Returns a factory: client_for(user_id, **user_fields) -> logged-in TestClient."""
    clients = []

    def _make(user_id, **user_fields):
        storage.upsert_user(db, schemas.UserUpsert(id=user_id, **user_fields))
        token = auth_utils.create_access_token(
            {"sub": user_id, "type": auth_utils.SESSION_TOKEN_TYPE}, settings
        )
        client = TestClient(app)
        client.cookies.set(auth_utils.AUTH_COOKIE_NAME, token)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture
def identity_token():
    def _make(sub, **claims):
        return jwt.encode({"sub": sub, **claims}, IDP_SECRET, algorithm="HS256")
    return _make


@pytest.fixture
def category(db):
    return storage.create_product_category(db, schemas.CategoryCreate(name="Vegetables"))


@pytest.fixture
def make_product(db, category):
    def _make(farmer_id, **fields):
        data = {
            "category_id": category.id,
            "name": "Tomatoes",
            "price_per_kg": "2.50",
            "available_stock": 100,
        }
        data.update(fields)
        return storage.create_product(db, farmer_id, schemas.ProductCreate(**data))
    return _make


@pytest.fixture
def farmer(db):
    return storage.upsert_user(db, schemas.UserUpsert(id="farmer-1", role="farmer", email="farmer@example.com"))


@pytest.fixture
def buyer(db):
    return storage.upsert_user(db, schemas.UserUpsert(id="buyer-1", role="buyer", email="buyer@example.com"))


@pytest.fixture
def admin_id():
    return ADMIN_ID
