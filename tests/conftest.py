import mongomock
import pytest
from fastapi.testclient import TestClient

import config
from database import create_document, ensure_indexes, get_db
from main import app, get_mercadopago
from mercadopago_api import MercadoPagoError


class FakeMercadoPago:
    """Records preference requests and serves canned payments."""

    def __init__(self):
        self.preferences = []
        self.payments = {}
        self.payment_lookups = []
        self.failing_tokens = set()

    def authorization_url(self, redirect_uri, state):
        return f"https://auth.mercadopago.com/authorization?state={state}&redirect_uri={redirect_uri}"

    def exchange_code(self, code, redirect_uri):
        if code == "bad-code":
            raise MercadoPagoError("MercadoPago error: invalid_grant", status_code=400)
        return {"access_token": f"token-{code}", "refresh_token": f"refresh-{code}"}

    def refresh_token(self, refresh_token):
        return {"access_token": "token-refreshed", "refresh_token": "refresh-refreshed"}

    def get_user(self, access_token):
        return {"id": 987654, "nickname": "TIENDA", "email": "tienda@example.com", "site_id": "MLA"}

    def create_preference(self, access_token, preference):
        if access_token in self.failing_tokens:
            raise MercadoPagoError("MercadoPago error: invalid access token", status_code=401)
        self.preferences.append((access_token, preference))
        pref_id = f"pref-{len(self.preferences)}"
        return {"id": pref_id, "init_point": f"https://www.mercadopago.com/checkout?pref_id={pref_id}"}

    def get_payment(self, access_token, payment_id):
        self.payment_lookups.append((access_token, payment_id))
        if payment_id not in self.payments:
            raise MercadoPagoError("MercadoPago error: Payment not found", status_code=404)
        return self.payments[payment_id]


@pytest.fixture
def db():
    database = mongomock.MongoClient()["servido_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def mp():
    return FakeMercadoPago()


@pytest.fixture
def client(db, mp, monkeypatch):
    monkeypatch.setattr(config, "BASE_URL", "https://servido.test")
    monkeypatch.setattr(config, "BACKEND_URL", "https://api.servido.test")
    monkeypatch.setattr(config, "MERCADOPAGO_ACCESS_TOKEN", "platform-token")
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_mercadopago] = lambda: mp
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make_user(name="Ana", role="user", **fields):
        data = {
            "name": name,
            "email": f"{name.lower()}@example.com",
            "role": role,
            "is_active": True,
            "is_subscribed": False,
            "product_upload_limit": None,
        }
        data.update(fields)
        return create_document(db, "user", data)
    return _make_user


@pytest.fixture
def make_seller(make_user):
    def _make_seller(name="Seller", connected=True, **fields):
        if connected:
            fields.setdefault("mercadopago", {"access_token": f"token-{name.lower()}", "refresh_token": f"refresh-{name.lower()}"})
        fields.setdefault("is_subscribed", True)
        return make_user(name=name, role="seller", **fields)
    return _make_seller


@pytest.fixture
def make_product(db):
    def _make_product(seller_id, name="Producto", price=100.0, stock=10, is_service=False):
        return create_document(db, "product", {
            "seller_id": seller_id,
            "name": name,
            "price": price,
            "category": "general",
            "media": [{"type": "image", "url": "https://cdn.test/a.jpg", "path": f"products/{seller_id}/a.jpg"}],
            "is_service": is_service,
            "stock": None if is_service else stock,
            "sold": 0,
        })
    return _make_product
