"""
MercadoPago REST client

Only the handful of calls the marketplace needs: OAuth authorization and token
exchange, the linked account profile, checkout preferences and payment lookup.
Every call that acts on a seller's behalf takes that seller's access token.
"""
import logging
from typing import Optional
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

API_URL = "https://api.mercadopago.com"
AUTH_URL = "https://auth.mercadopago.com"
DEFAULT_TIMEOUT = 30


class MercadoPagoError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class MercadoPagoClient:
    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: int = DEFAULT_TIMEOUT):
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.timeout = timeout

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        if not self.client_id:
            raise MercadoPagoError("MERCADOPAGO_CLIENT_ID no está configurado")
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "platform_id": "mp",
            "state": state,
            "redirect_uri": redirect_uri,
            "scope": "offline_access read write",
        }
        return f"{AUTH_URL}/authorization?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str) -> dict:
        return self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })

    def refresh_token(self, refresh_token: str) -> dict:
        return self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    def get_user(self, access_token: str) -> dict:
        return self._request("GET", "/users/me", access_token)

    def create_preference(self, access_token: str, preference: dict) -> dict:
        return self._request("POST", "/checkout/preferences", access_token, json=preference)

    def get_payment(self, access_token: str, payment_id: str) -> dict:
        return self._request("GET", f"/v1/payments/{payment_id}", access_token)

    def _token_request(self, body: dict) -> dict:
        payload = {"client_id": self.client_id, "client_secret": self.client_secret, **body}
        data = self._request("POST", "/oauth/token", json=payload)
        if not data.get("access_token"):
            raise MercadoPagoError("No se pudo obtener el access token", payload=data)
        return data

    def _request(self, method: str, path: str, access_token: Optional[str] = None, **kwargs) -> dict:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        url = f"{API_URL}{path}"
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("MercadoPago %s %s failed: %s", method, path, e)
            raise MercadoPagoError(f"Error de conexión con MercadoPago: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            logger.error("MercadoPago %s %s returned a non-object body: %r", method, path, data)
            if resp.ok:
                raise MercadoPagoError("Respuesta inesperada de MercadoPago", status_code=resp.status_code)
            data = {}

        if not resp.ok:
            logger.error("MercadoPago %s %s returned %s: %s", method, path, resp.status_code, data)
            message = data.get("message") or data.get("error") or "Error desconocido"
            raise MercadoPagoError(f"MercadoPago error: {message}", status_code=resp.status_code, payload=data)
        return data
