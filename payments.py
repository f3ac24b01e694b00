"""
Payment orchestration

A cart may hold items from several sellers. Each seller is paid into their own
MercadoPago account, so checkout creates one preference per seller using the
access token the seller linked through OAuth. The provider later notifies the
webhook; the payment is fetched back from the provider and, once approved,
stock is moved or a seller subscription is activated.

Approved side effects run at most once per payment id: the transaction record
for the payment carries an `applied` flag that is flipped with a single
conditional update before anything else is touched. Each side effect is also
keyed by the payment id, so a retry after a partial failure only finishes the
work that was missing.
"""
import logging
import secrets
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import create_document, now
from mercadopago_api import MercadoPagoClient, MercadoPagoError
from schemas import (
    MercadoPagoAccount,
    OAuthState,
    Order,
    OrderItem,
    PaymentItem,
    Subscription,
    SubscriptionSummary,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_PREFIX = "subscription_"


class PaymentError(Exception):
    status_code = 400


class SellerNotConnectedError(PaymentError):
    pass


class NotFoundError(PaymentError):
    status_code = 404


class UserNotFoundError(NotFoundError):
    pass


class InvalidOAuthStateError(PaymentError):
    pass


class UnknownPlanError(PaymentError):
    pass


class ConfigurationError(PaymentError):
    status_code = 500


# Users and tokens

def find_user(db: Database, user_id: str) -> dict:
    user = db["user"].find_one({"_id": ObjectId(user_id)}) if ObjectId.is_valid(user_id) else None
    if not user:
        raise UserNotFoundError("Usuario no encontrado")
    return user


def get_seller_token(db: Database, seller_id: str) -> str:
    try:
        seller = find_user(db, seller_id)
    except UserNotFoundError:
        raise SellerNotConnectedError("Vendedor no encontrado") from None
    access_token = (seller.get("mercadopago") or {}).get("access_token")
    if not access_token:
        raise SellerNotConnectedError("El vendedor no tiene una cuenta de MercadoPago conectada")
    return access_token


def platform_token() -> str:
    if not config.MERCADOPAGO_ACCESS_TOKEN:
        raise ConfigurationError("MERCADOPAGO_ACCESS_TOKEN no está configurado")
    return config.MERCADOPAGO_ACCESS_TOKEN


# Cart splitting and preferences

def resolve_cart_items(db: Database, items: List[PaymentItem]) -> List[PaymentItem]:
    """Price, seller and title come from the catalog, never from the cart body."""
    resolved = []
    for item in items:
        product = db["product"].find_one({"_id": ObjectId(item.id)}) if ObjectId.is_valid(item.id) else None
        if not product:
            raise PaymentError(f"Producto no encontrado: {item.id}")
        resolved.append(item.model_copy(update={
            "price": float(product["price"]),
            "seller_id": product["seller_id"],
            "title": product.get("name") or item.title,
        }))
    return resolved


def group_items_by_seller(items: List[PaymentItem]) -> Dict[str, List[PaymentItem]]:
    """Partition cart items by seller, keeping sellers in order of first appearance."""
    groups: Dict[str, List[PaymentItem]] = {}
    for item in items:
        groups.setdefault(item.seller_id, []).append(item)
    return groups


def preference_items(items: List[PaymentItem]) -> List[dict]:
    return [
        {
            "id": item.id,
            "title": item.title,
            "unit_price": float(item.price),
            "quantity": int(item.quantity),
            "currency_id": config.MERCADOPAGO_CURRENCY,
            "description": item.description,
            "picture_url": item.image,
        }
        for item in items
    ]


def back_urls(path: str = "/payment") -> dict:
    return {
        "success": f"{config.BASE_URL}{path}/success",
        "failure": f"{config.BASE_URL}{path}/failure",
        "pending": f"{config.BASE_URL}{path}/pending",
    }


def create_seller_preference(db: Database, mp: MercadoPagoClient, seller_id: str,
                             items: List[PaymentItem], buyer_id: str) -> dict:
    access_token = get_seller_token(db, seller_id)

    order = Order(
        buyer_id=buyer_id,
        seller_id=seller_id,
        items=[OrderItem(product_id=i.id, title=i.title, quantity=i.quantity, unit_price=i.price) for i in items],
        total=round(sum(i.price * i.quantity for i in items), 2),
    )
    order_id = create_document(db, "order", order)

    preference = {
        "items": preference_items(items),
        "back_urls": back_urls(),
        "auto_return": "approved",
        "external_reference": order_id,
        "notification_url": f"{config.webhook_url()}?seller_id={seller_id}",
        "metadata": {
            "seller_id": seller_id,
            "buyer_id": buyer_id,
            "order_id": order_id,
        },
    }

    try:
        response = mp.create_preference(access_token, preference)
    except MercadoPagoError:
        db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "failed", "updated_at": now()}})
        raise

    db["order"].update_one(
        {"_id": ObjectId(order_id)},
        {"$set": {"preference_id": response.get("id"), "updated_at": now()}},
    )
    return {
        "sellerId": seller_id,
        "preferenceId": response.get("id"),
        "init_point": response.get("init_point"),
        "orderId": order_id,
    }


def create_preferences(db: Database, mp: MercadoPagoClient, items: List[PaymentItem], buyer_id: str) -> List[dict]:
    """
    One preference per seller group. A group that fails is reported with an
    `error` entry and does not stop the remaining groups. A cart line whose
    product does not exist fails the whole request.
    """
    items = resolve_cart_items(db, items)
    results = []
    for seller_id, seller_items in group_items_by_seller(items).items():
        try:
            results.append(create_seller_preference(db, mp, seller_id, seller_items, buyer_id))
        except (PaymentError, MercadoPagoError) as e:
            logger.warning("Preference for seller %s failed: %s", seller_id, e)
            results.append({"sellerId": seller_id, "error": str(e)})
    return results


# OAuth account linking

def start_oauth(db: Database, mp: MercadoPagoClient, user_id: str) -> str:
    find_user(db, user_id)
    state = secrets.token_urlsafe(24)
    auth_url = mp.authorization_url(config.oauth_redirect_uri(), state)
    create_document(db, "oauth_state", OAuthState(state=state, user_id=user_id))
    logger.info("OAuth authorization issued for user %s", user_id)
    return auth_url


def consume_oauth_state(db: Database, state: str, user_id: Optional[str] = None) -> str:
    doc = db["oauth_state"].find_one_and_delete({"state": state})
    if not doc:
        raise InvalidOAuthStateError("Estado de autorización inválido o expirado")
    if user_id and doc["user_id"] != user_id:
        raise InvalidOAuthStateError("El estado de autorización no corresponde al usuario")
    return doc["user_id"]


def link_account(db: Database, mp: MercadoPagoClient, user_id: Optional[str], code: Optional[str],
                 state: Optional[str] = None) -> MercadoPagoAccount:
    if not code or not user_id:
        raise PaymentError("Código de autorización o ID de usuario faltante")
    if state:
        consume_oauth_state(db, state, user_id)
    find_user(db, user_id)

    tokens = mp.exchange_code(code, config.oauth_redirect_uri())
    profile = mp.get_user(tokens["access_token"])

    account = MercadoPagoAccount(
        access_token=tokens["access_token"],
        refresh_token=tokens.get("refresh_token"),
        user_id=str(profile["id"]) if profile.get("id") is not None else None,
        nickname=profile.get("nickname"),
        email=profile.get("email"),
        site_id=profile.get("site_id"),
        connected_at=now(),
    )
    db["user"].update_one(
        {"_id": ObjectId(user_id)},
        {"$set": {"mercadopago": account.model_dump(), "updated_at": now()}},
    )
    db["oauth_state"].delete_many({"user_id": user_id})
    logger.info("MercadoPago account %s linked to user %s", account.user_id, user_id)
    return account


def refresh_account(db: Database, mp: MercadoPagoClient, user_id: str) -> MercadoPagoAccount:
    user = find_user(db, user_id)
    current = user.get("mercadopago") or {}
    if not current.get("access_token"):
        raise SellerNotConnectedError("El vendedor no tiene una cuenta de MercadoPago conectada")
    if not current.get("refresh_token"):
        raise PaymentError("La cuenta de MercadoPago no tiene refresh token")

    tokens = mp.refresh_token(current["refresh_token"])
    account = MercadoPagoAccount(**{
        **current,
        "access_token": tokens["access_token"],
        "refresh_token": tokens.get("refresh_token") or current["refresh_token"],
        "refreshed_at": now(),
    })
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"mercadopago": account.model_dump(), "updated_at": now()}},
    )
    return account


def disconnect_account(db: Database, user_id: str):
    user = find_user(db, user_id)
    db["user"].update_one({"_id": user["_id"]}, {"$unset": {"mercadopago": ""}, "$set": {"updated_at": now()}})
    logger.info("MercadoPago account unlinked from user %s", user_id)


def connection_status(db: Database, user_id: str) -> dict:
    user = find_user(db, user_id)
    return {
        "isConnected": bool((user.get("mercadopago") or {}).get("access_token")),
        "lastChecked": now().isoformat(),
    }


# Webhook reconciliation

def record_transaction(db: Database, payment_id: str, payment: dict, seller_id: Optional[str]):
    metadata = payment.get("metadata") or {}
    stamp = now()
    db["transaction"].update_one(
        {"payment_id": payment_id},
        {
            "$set": {
                "status": payment.get("status"),
                "external_reference": payment.get("external_reference"),
                "seller_id": metadata.get("seller_id") or seller_id,
                "buyer_id": metadata.get("buyer_id"),
                "payment_details": payment,
                "updated_at": stamp,
            },
            "$setOnInsert": {"applied": False, "created_at": stamp},
        },
        upsert=True,
    )


def claim_payment(db: Database, payment_id: str) -> bool:
    """True only for the one caller that flips the payment to applied."""
    doc = db["transaction"].find_one_and_update(
        {"payment_id": payment_id, "applied": False},
        {"$set": {"applied": True, "applied_at": now()}},
    )
    return doc is not None


def release_payment(db: Database, payment_id: str):
    db["transaction"].update_one({"payment_id": payment_id}, {"$set": {"applied": False, "applied_at": None}})


def update_order_status(db: Database, reference: str, status: str, payment_id: str):
    if not ObjectId.is_valid(reference):
        return
    db["order"].update_one(
        {"_id": ObjectId(reference)},
        {"$set": {"status": status, "payment_id": payment_id, "updated_at": now()}},
    )


def payment_lines(db: Database, payment: dict) -> List[Tuple[str, int]]:
    items = (payment.get("additional_info") or {}).get("items") or []
    if items:
        lines = [(str(i.get("id")), int(i.get("quantity") or 0)) for i in items]
    else:
        # fall back to the order the preference was created for
        reference = payment.get("external_reference") or ""
        order = db["order"].find_one({"_id": ObjectId(reference)}) if ObjectId.is_valid(reference) else None
        if not order:
            return []
        lines = [(i["product_id"], int(i["quantity"])) for i in order.get("items", [])]

    merged: Dict[str, int] = {}
    for product_id, quantity in lines:
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def update_product_stock(db: Database, lines: List[Tuple[str, int]], payment_id: str):
    """
    Move stock and sold for each line. A product records the payments already
    applied to it, so a retried payment only touches the lines it missed.
    """
    for product_id, quantity in lines:
        if quantity <= 0:
            continue
        if not ObjectId.is_valid(product_id):
            logger.warning("Skipping stock update for invalid product id %s", product_id)
            continue
        product = db["product"].find_one({"_id": ObjectId(product_id)}, {"is_service": 1, "stock": 1})
        if not product:
            logger.warning("Skipping stock update for missing product %s", product_id)
            continue

        inc = {"sold": quantity}
        if not product.get("is_service") and product.get("stock") is not None:
            inc["stock"] = -quantity
        updated = db["product"].find_one_and_update(
            {"_id": product["_id"], "applied_payments": {"$ne": payment_id}},
            {"$inc": inc, "$push": {"applied_payments": payment_id}, "$set": {"updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            logger.info("Payment %s already moved stock for product %s", payment_id, product_id)
            continue
        if updated.get("stock") is not None and updated["stock"] < 0:
            logger.warning("Product %s oversold, stock is now %s", product_id, updated["stock"])


def process_payment_notification(db: Database, mp: MercadoPagoClient, payment_id: str,
                                 seller_id: Optional[str] = None) -> dict:
    access_token = get_seller_token(db, seller_id) if seller_id else platform_token()
    payment = mp.get_payment(access_token, payment_id)

    status = payment.get("status")
    reference = payment.get("external_reference") or ""
    record_transaction(db, payment_id, payment, seller_id)

    is_subscription = reference.startswith(SUBSCRIPTION_PREFIX)
    if not is_subscription:
        update_order_status(db, reference, status, payment_id)

    applied = False
    if status == "approved":
        if claim_payment(db, payment_id):
            try:
                if is_subscription:
                    activate_subscription(db, reference, payment_id, payment)
                else:
                    update_product_stock(db, payment_lines(db, payment), payment_id)
            except Exception:
                release_payment(db, payment_id)
                raise
            applied = True
            logger.info("Payment %s applied (%s)", payment_id, reference or "no reference")
        else:
            logger.info("Payment %s already applied, ignoring duplicate notification", payment_id)
    else:
        logger.info("Payment %s has status %s, nothing to apply", payment_id, status)

    return {
        "payment_id": payment_id,
        "status": status,
        "external_reference": reference,
        "applied": applied,
    }


# Subscriptions

def get_plan(plan_type: str) -> dict:
    plan = config.SUBSCRIPTION_PLANS.get(plan_type)
    if not plan:
        raise UnknownPlanError(f"Plan de suscripción desconocido: {plan_type}")
    return plan


def parse_subscription_reference(reference: str) -> Optional[Tuple[str, str]]:
    if not reference.startswith(SUBSCRIPTION_PREFIX):
        return None
    user_id, _, plan_type = reference[len(SUBSCRIPTION_PREFIX):].partition("_")
    if not user_id or not plan_type:
        return None
    return user_id, plan_type


def create_subscription_preference(db: Database, mp: MercadoPagoClient, user_id: str, plan_type: str) -> dict:
    plan = get_plan(plan_type)
    find_user(db, user_id)

    preference = {
        "items": [{
            "id": plan["id"],
            "title": plan["title"],
            "description": plan["description"],
            "unit_price": plan["price"],
            "quantity": 1,
            "currency_id": config.MERCADOPAGO_CURRENCY,
        }],
        "back_urls": back_urls("/dashboard/seller/subscription"),
        "auto_return": "approved",
        "external_reference": f"{SUBSCRIPTION_PREFIX}{user_id}_{plan_type}",
        "notification_url": config.webhook_url(),
        "metadata": {"user_id": user_id, "plan_type": plan_type},
    }
    response = mp.create_preference(platform_token(), preference)
    return {"init_point": response.get("init_point"), "preferenceId": response.get("id")}


def activate_subscription(db: Database, reference: str, payment_id: str, payment: Optional[dict] = None) -> str:
    parsed = parse_subscription_reference(reference)
    if not parsed:
        raise PaymentError(f"Referencia de suscripción inválida: {reference}")
    user_id, plan_type = parsed
    plan = get_plan(plan_type)
    user = find_user(db, user_id)

    start = now()
    end = start + timedelta(days=config.SUBSCRIPTION_DAYS)
    price = (payment or {}).get("transaction_amount") or plan["price"]

    subscription = Subscription(
        user_id=user_id,
        plan_type=plan_type,
        payment_id=payment_id,
        start_date=start,
        end_date=end,
        price=price,
    )
    # one subscription per payment, a retried activation reuses it
    doc = db["subscription"].find_one_and_update(
        {"payment_id": payment_id},
        {"$setOnInsert": {**subscription.model_dump(exclude={"payment_id"}), "created_at": start, "updated_at": start}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    subscription_id = str(doc["_id"])

    summary = SubscriptionSummary(
        subscription_id=subscription_id,
        plan_type=plan_type,
        status="active",
        start_date=doc["start_date"],
        end_date=doc["end_date"],
    )
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "role": "seller",
            "is_subscribed": True,
            "product_upload_limit": plan["product_limit"],
            "subscription": summary.model_dump(),
            "updated_at": now(),
        }},
    )
    logger.info("Subscription %s (%s) activated for user %s", subscription_id, plan_type, user_id)
    return subscription_id


def get_active_subscription(db: Database, user_id: str) -> Optional[dict]:
    return db["subscription"].find_one(
        {"user_id": user_id, "status": "active", "end_date": {"$gte": now()}},
        sort=[("start_date", -1)],
    )


def cancel_subscription(db: Database, subscription_id: str) -> dict:
    subscription = db["subscription"].find_one({"_id": ObjectId(subscription_id)}) if ObjectId.is_valid(subscription_id) else None
    if not subscription:
        raise NotFoundError("Suscripción no encontrada")
    stamp = now()
    db["subscription"].update_one({"_id": subscription["_id"]}, {"$set": {"status": "cancelled", "updated_at": stamp}})
    if ObjectId.is_valid(subscription["user_id"]):
        db["user"].update_one(
            {"_id": ObjectId(subscription["user_id"]), "subscription.subscription_id": subscription_id},
            {"$set": {"is_subscribed": False, "subscription.status": "cancelled", "updated_at": stamp}},
        )
    subscription["status"] = "cancelled"
    return subscription
