"""
Application settings

Everything is read from the environment (a local .env file is loaded first).
"""
import os
import logging

from dotenv import load_dotenv

load_dotenv()

BASE_URL = os.getenv("BASE_URL", "http://localhost:3000").rstrip("/")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:3005").rstrip("/")

MERCADOPAGO_CLIENT_ID = os.getenv("MERCADOPAGO_CLIENT_ID")
MERCADOPAGO_CLIENT_SECRET = os.getenv("MERCADOPAGO_CLIENT_SECRET")
MERCADOPAGO_ACCESS_TOKEN = os.getenv("MERCADOPAGO_ACCESS_TOKEN")
MERCADOPAGO_CURRENCY = os.getenv("MERCADOPAGO_CURRENCY", "ARS")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

SUBSCRIPTION_DAYS = 30

# product_limit None means unlimited uploads
SUBSCRIPTION_PLANS = {
    "basic": {
        "id": "subscription-basic",
        "title": "Plan Básico",
        "description": "Ideal para vendedores que están comenzando",
        "price": 10.00,
        "product_limit": 10,
    },
    "premium": {
        "id": "subscription-premium",
        "title": "Plan Premium",
        "description": "Para vendedores que buscan crecer",
        "price": 20.00,
        "product_limit": None,
    },
}


def oauth_redirect_uri() -> str:
    return f"{BACKEND_URL}/api/mercadopago/oauth/callback"


def webhook_url() -> str:
    return f"{BACKEND_URL}/api/mercadopago/webhook"


def setup_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
