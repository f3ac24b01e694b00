from urllib.parse import parse_qs, urlparse

import pytest
import requests

from mercadopago_api import MercadoPagoClient, MercadoPagoError


class StubResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload

    def json(self):
        return self._payload


class StubSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_authorization_url():
    client = MercadoPagoClient("123", "secret", session=StubSession())
    url = client.authorization_url("https://api.servido.test/api/mercadopago/oauth/callback", "st4te")
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert parsed.netloc == "auth.mercadopago.com"
    assert parsed.path == "/authorization"
    assert query["client_id"] == ["123"]
    assert query["response_type"] == ["code"]
    assert query["platform_id"] == ["mp"]
    assert query["state"] == ["st4te"]
    assert query["scope"] == ["offline_access read write"]


def test_authorization_url_requires_client_id():
    with pytest.raises(MercadoPagoError):
        MercadoPagoClient(None, None, session=StubSession()).authorization_url("https://x", "s")


def test_exchange_code_posts_credentials():
    session = StubSession(StubResponse(200, {"access_token": "APP_USR-1", "refresh_token": "TG-1"}))
    client = MercadoPagoClient("123", "secret", session=session)
    tokens = client.exchange_code("TG-code", "https://cb")
    assert tokens["access_token"] == "APP_USR-1"

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://api.mercadopago.com/oauth/token")
    assert kwargs["json"] == {
        "client_id": "123",
        "client_secret": "secret",
        "grant_type": "authorization_code",
        "code": "TG-code",
        "redirect_uri": "https://cb",
    }
    assert kwargs["timeout"] == 30


def test_token_response_without_access_token():
    session = StubSession(StubResponse(200, {"message": "weird"}))
    with pytest.raises(MercadoPagoError):
        MercadoPagoClient("1", "2", session=session).refresh_token("TG-1")


def test_seller_calls_use_bearer_token():
    session = StubSession(StubResponse(201, {"id": "pref-1", "init_point": "https://mp/checkout"}))
    client = MercadoPagoClient(session=session)
    assert client.create_preference("APP_USR-seller", {"items": []})["id"] == "pref-1"
    method, url, kwargs = session.calls[0]
    assert url == "https://api.mercadopago.com/checkout/preferences"
    assert kwargs["headers"]["Authorization"] == "Bearer APP_USR-seller"


def test_error_response_raises_with_status():
    session = StubSession(StubResponse(404, {"message": "Payment not found", "status": 404}))
    with pytest.raises(MercadoPagoError) as excinfo:
        MercadoPagoClient(session=session).get_payment("tok", "42")
    assert excinfo.value.status_code == 404
    assert "Payment not found" in str(excinfo.value)
    assert session.calls[0][1] == "https://api.mercadopago.com/v1/payments/42"


def test_connection_error_is_wrapped():
    session = StubSession(requests.ConnectionError("boom"))
    with pytest.raises(MercadoPagoError) as excinfo:
        MercadoPagoClient(session=session).get_user("tok")
    assert excinfo.value.status_code is None


def test_non_object_success_body_raises():
    session = StubSession(StubResponse(200, [{"id": 1}]))
    with pytest.raises(MercadoPagoError) as excinfo:
        MercadoPagoClient(session=session).get_payment("tok", "42")
    assert excinfo.value.status_code == 200


def test_non_object_error_body_keeps_status():
    session = StubSession(StubResponse(500, ["upstream down"]))
    with pytest.raises(MercadoPagoError) as excinfo:
        MercadoPagoClient(session=session).create_preference("tok", {"items": []})
    assert excinfo.value.status_code == 500
    assert "Error desconocido" in str(excinfo.value)
