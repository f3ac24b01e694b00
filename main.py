import os
import re
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Depends, Body, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
import database
import payments
from database import get_db, create_document, get_documents, now
from mercadopago_api import MercadoPagoClient, MercadoPagoError
from schemas import (
    User, UserUpdate, Category, Brand, Product, ProductUpdate, ProductMedia,
    Review, Question, Answer, Favorite, FavoriteToggle, Chat, ChatStart, Message, MessageCreate,
    CreatePaymentRequest, OAuthCodeRequest, UserIdRequest, SubscriptionRequest,
)

config.setup_logging()
logger = logging.getLogger(__name__)

DIAGNOSTIC_COLLECTIONS = ("user", "product", "order", "transaction", "subscription")

mercadopago_client = MercadoPagoClient(config.MERCADOPAGO_CLIENT_ID, config.MERCADOPAGO_CLIENT_SECRET)


def get_mercadopago() -> MercadoPagoClient:
    return mercadopago_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Servido Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Helpers
def to_obj_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="ID inválido")
    return ObjectId(id_str)


def serialize(doc: dict):
    if not doc:
        return doc
    doc["id"] = str(doc.pop("_id"))
    return doc


def public_product(doc: dict):
    doc.pop("applied_payments", None)
    return serialize(doc)


def public_user(doc: dict):
    """Serialize a user without the stored OAuth tokens."""
    doc = serialize(doc)
    account = doc.pop("mercadopago", None) or {}
    doc["mercadopago"] = {
        "connected": bool(account.get("access_token")),
        "nickname": account.get("nickname"),
        "email": account.get("email"),
        "connected_at": account.get("connected_at"),
    }
    return doc


def get_or_404(db: Database, collection: str, doc_id: str, detail: str) -> dict:
    doc = db[collection].find_one({"_id": to_obj_id(doc_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=detail)
    return doc


def first_image(product: dict) -> Optional[str]:
    for media in product.get("media") or []:
        if media.get("type") == "image":
            return media.get("url")
    return product.get("image_url")


def check_media_paths(media: List[ProductMedia], seller_id: str):
    prefix = f"products/{seller_id}/"
    for m in media:
        if not m.path.startswith(prefix):
            raise HTTPException(status_code=400, detail=f"Los archivos del producto deben estar en {prefix}")


def to_http_error(e: Exception, fallback: str) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, payments.PaymentError):
        return HTTPException(status_code=e.status_code, detail=str(e))
    if isinstance(e, MercadoPagoError):
        return HTTPException(status_code=502 if e.status_code else 500, detail=str(e))
    logger.exception(fallback)
    return HTTPException(status_code=500, detail=str(e) or fallback)


@app.get("/")
def read_root():
    return {"message": "Servido Marketplace API running"}


@app.get("/test")
def test_database():
    """Connection diagnostics: database reachability, marketplace collections and MercadoPago credentials."""
    db = database.db
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "collections": {},
        "mercadopago": {
            "client_id": bool(config.MERCADOPAGO_CLIENT_ID),
            "client_secret": bool(config.MERCADOPAGO_CLIENT_SECRET),
            "platform_token": bool(config.MERCADOPAGO_ACCESS_TOKEN),
            "webhook_url": config.webhook_url(),
        },
    }
    if db is None:
        return response
    response["database_name"] = db.name
    try:
        response["collections"] = {name: db[name].estimated_document_count() for name in DIAGNOSTIC_COLLECTIONS}
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        logger.warning("Database diagnostics failed: %s", e)
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response



# Users
@app.post("/api/users", response_model=dict)
def create_user(user: User, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": user.email}):
        raise HTTPException(status_code=400, detail="El email ya está registrado")
    data = user.model_dump(exclude={"mercadopago", "subscription"})
    user_id = create_document(db, "user", data)
    return {"id": user_id}


@app.get("/api/users", response_model=List[dict])
def list_users(role: Optional[str] = None, limit: Optional[int] = 100, db: Database = Depends(get_db)):
    query = {"role": role} if role else {}
    docs = get_documents(db, "user", query, limit)
    return [public_user(d) for d in docs]


@app.get("/api/users/{user_id}", response_model=dict)
def get_user(user_id: str, db: Database = Depends(get_db)):
    return public_user(get_or_404(db, "user", user_id, "Usuario no encontrado"))


@app.patch("/api/users/{user_id}", response_model=dict)
def update_user(user_id: str, payload: UserUpdate, db: Database = Depends(get_db)):
    update = payload.model_dump(exclude_unset=True)
    update["updated_at"] = now()
    res = db["user"].update_one({"_id": to_obj_id(user_id)}, {"$set": update})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Usuario no encontrado")
    return public_user(db["user"].find_one({"_id": to_obj_id(user_id)}))


# Categories and brands
@app.post("/api/categories", response_model=dict)
def create_category(category: Category, db: Database = Depends(get_db)):
    return {"id": create_document(db, "category", category)}


@app.get("/api/categories", response_model=List[dict])
def list_categories(db: Database = Depends(get_db)):
    return [serialize(d) for d in db["category"].find().sort("name", 1)]


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, db: Database = Depends(get_db)):
    doc = get_or_404(db, "category", category_id, "Categoría no encontrada")
    db["category"].delete_one({"_id": doc["_id"]})
    return {"ok": True, "image_path": doc.get("image_path")}


@app.post("/api/brands", response_model=dict)
def create_brand(brand: Brand, db: Database = Depends(get_db)):
    return {"id": create_document(db, "brand", brand)}


@app.get("/api/brands", response_model=List[dict])
def list_brands(db: Database = Depends(get_db)):
    return [serialize(d) for d in db["brand"].find().sort("name", 1)]


@app.delete("/api/brands/{brand_id}")
def delete_brand(brand_id: str, db: Database = Depends(get_db)):
    doc = get_or_404(db, "brand", brand_id, "Marca no encontrada")
    db["brand"].delete_one({"_id": doc["_id"]})
    return {"ok": True, "image_path": doc.get("image_path")}


# Products
@app.post("/api/products", response_model=dict)
def create_product(product: Product, db: Database = Depends(get_db)):
    seller = get_or_404(db, "user", product.seller_id, "Vendedor no encontrado")
    if seller.get("role") != "admin":
        if not seller.get("is_subscribed"):
            raise HTTPException(status_code=403, detail="Necesitas una suscripción activa para publicar productos")
        limit = seller.get("product_upload_limit")
        if limit is not None and db["product"].count_documents({"seller_id": product.seller_id}) >= limit:
            raise HTTPException(status_code=403, detail=f"Alcanzaste el límite de {limit} productos de tu plan")
    if not product.media and not product.image_url:
        raise HTTPException(status_code=400, detail="Debes subir al menos una imagen o video del producto")
    check_media_paths(product.media, product.seller_id)

    data = product.model_dump()
    data["sold"] = 0
    if product.is_service:
        data["stock"] = None
    prod_id = create_document(db, "product", data)
    return {"id": prod_id}


@app.get("/api/products", response_model=List[dict])
def list_products(seller_id: Optional[str] = None, category: Optional[str] = None, brand: Optional[str] = None,
                  is_service: Optional[bool] = None, q: Optional[str] = None, limit: Optional[int] = 50,
                  db: Database = Depends(get_db)):
    query = {}
    if seller_id:
        query["seller_id"] = seller_id
    if category:
        query["category"] = category
    if brand:
        query["brand"] = brand
    if is_service is not None:
        query["is_service"] = is_service
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    docs = get_documents(db, "product", query, limit)
    return [public_product(d) for d in docs]


@app.get("/api/products/{product_id}", response_model=dict)
def get_product(product_id: str, db: Database = Depends(get_db)):
    return public_product(get_or_404(db, "product", product_id, "Producto no encontrado"))


@app.patch("/api/products/{product_id}", response_model=dict)
def update_product(product_id: str, payload: ProductUpdate, db: Database = Depends(get_db)):
    product = get_or_404(db, "product", product_id, "Producto no encontrado")
    if payload.media is not None:
        check_media_paths(payload.media, product["seller_id"])
    update = payload.model_dump(exclude_unset=True)
    if update.get("is_service", product.get("is_service")):
        update["stock"] = None
    update["updated_at"] = now()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    return public_product(db["product"].find_one({"_id": product["_id"]}))


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db)):
    product = get_or_404(db, "product", product_id, "Producto no encontrado")
    db["product"].delete_one({"_id": product["_id"]})
    paths = [m.get("path") for m in product.get("media") or [] if m.get("path")]
    if product.get("image_path"):
        paths.append(product["image_path"])
    return {"ok": True, "media_paths": paths}


# Reviews
@app.post("/api/reviews", response_model=dict)
def create_review(review: Review, db: Database = Depends(get_db)):
    get_or_404(db, "product", review.product_id, "Producto no encontrado")
    if db["review"].find_one({"product_id": review.product_id, "user_id": review.user_id}):
        raise HTTPException(status_code=409, detail="Ya dejaste una reseña para este producto")
    try:
        review_id = create_document(db, "review", review)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Ya dejaste una reseña para este producto")
    return {"id": review_id}


@app.get("/api/reviews", response_model=List[dict])
def list_reviews(product_id: Optional[str] = None, user_id: Optional[str] = None, limit: Optional[int] = 100,
                 db: Database = Depends(get_db)):
    query = {}
    if product_id:
        query["product_id"] = product_id
    if user_id:
        query["user_id"] = user_id
    docs = get_documents(db, "review", query, limit)
    return [serialize(d) for d in docs]


@app.get("/api/products/{product_id}/reviews", response_model=dict)
def product_reviews(product_id: str, db: Database = Depends(get_db)):
    reviews = [serialize(d) for d in get_documents(db, "review", {"product_id": product_id})]
    count = len(reviews)
    average = round(sum(r["rating"] for r in reviews) / count, 2) if count else 0
    return {"items": reviews, "count": count, "average_rating": average}


# Questions
@app.post("/api/questions", response_model=dict)
def create_question(question: Question, db: Database = Depends(get_db)):
    get_or_404(db, "product", question.product_id, "Producto no encontrado")
    data = question.model_dump(exclude={"answer", "answered_by", "answered_at"})
    return {"id": create_document(db, "question", data)}


@app.get("/api/questions", response_model=List[dict])
def list_questions(product_id: str, db: Database = Depends(get_db)):
    docs = get_documents(db, "question", {"product_id": product_id})
    return [serialize(d) for d in docs]


@app.post("/api/questions/{question_id}/answer", response_model=dict)
def answer_question(question_id: str, payload: Answer, db: Database = Depends(get_db)):
    question = get_or_404(db, "question", question_id, "Pregunta no encontrada")
    product = get_or_404(db, "product", question["product_id"], "Producto no encontrado")
    if product.get("seller_id") != payload.user_id:
        raise HTTPException(status_code=403, detail="Solo el vendedor puede responder preguntas")
    db["question"].update_one(
        {"_id": question["_id"]},
        {"$set": {
            "answer": payload.answer,
            "answered_by": payload.answered_by or "Vendedor",
            "answered_at": now(),
        }},
    )
    return serialize(db["question"].find_one({"_id": question["_id"]}))


# Favorites
@app.post("/api/favorites/toggle", response_model=dict)
def toggle_favorite(payload: FavoriteToggle, db: Database = Depends(get_db)):
    existing = db["favorite"].find_one({"user_id": payload.user_id, "product_id": payload.product_id})
    if existing:
        db["favorite"].delete_one({"_id": existing["_id"]})
        return {"favorite": False}
    product = get_or_404(db, "product", payload.product_id, "Producto no encontrado")
    favorite = Favorite(
        user_id=payload.user_id,
        product_id=payload.product_id,
        name=product.get("name"),
        price=product.get("price"),
        image_url=first_image(product),
    )
    return {"favorite": True, "id": create_document(db, "favorite", favorite)}


@app.get("/api/favorites", response_model=List[dict])
def list_favorites(user_id: str, db: Database = Depends(get_db)):
    return [serialize(d) for d in get_documents(db, "favorite", {"user_id": user_id})]


# Chats
@app.post("/api/chats", response_model=dict)
def start_chat(payload: ChatStart, db: Database = Depends(get_db)):
    product = get_or_404(db, "product", payload.product_id, "Producto no encontrado")
    seller_id = product["seller_id"]
    if seller_id == payload.buyer_id:
        raise HTTPException(status_code=400, detail="No puedes iniciar un chat sobre tu propio producto")

    existing = db["chat"].find_one({"product_id": payload.product_id, "buyer_id": payload.buyer_id, "seller_id": seller_id})
    if existing:
        return {"id": str(existing["_id"]), "created": False}

    seller = db["user"].find_one({"_id": ObjectId(seller_id)}) if ObjectId.is_valid(seller_id) else None
    buyer_name = payload.buyer_name or "Comprador"
    stamp = now()
    chat = Chat(
        product_id=payload.product_id,
        buyer_id=payload.buyer_id,
        seller_id=seller_id,
        buyer_name=buyer_name,
        seller_name=(seller or {}).get("name") or "Vendedor",
        product_name=product.get("name"),
        product_image_url=first_image(product),
        last_message=payload.text,
        last_message_at=stamp,
    )
    chat_id = create_document(db, "chat", chat)
    create_document(db, "message", Message(chat_id=chat_id, sender_id=payload.buyer_id, sender_name=buyer_name, text=payload.text))
    return {"id": chat_id, "created": True}


@app.get("/api/chats", response_model=List[dict])
def list_chats(user_id: str, db: Database = Depends(get_db)):
    cursor = db["chat"].find({"$or": [{"buyer_id": user_id}, {"seller_id": user_id}]}).sort("last_message_at", -1)
    return [serialize(d) for d in cursor]


@app.get("/api/chats/{chat_id}/messages", response_model=List[dict])
def list_messages(chat_id: str, db: Database = Depends(get_db)):
    get_or_404(db, "chat", chat_id, "Chat no encontrado")
    return [serialize(d) for d in db["message"].find({"chat_id": chat_id}).sort([("created_at", 1), ("_id", 1)])]


@app.post("/api/chats/{chat_id}/messages", response_model=dict)
def send_message(chat_id: str, payload: MessageCreate, db: Database = Depends(get_db)):
    chat = get_or_404(db, "chat", chat_id, "Chat no encontrado")
    if payload.sender_id not in (chat["buyer_id"], chat["seller_id"]):
        raise HTTPException(status_code=403, detail="No participas en este chat")
    message_id = create_document(db, "message", Message(chat_id=chat_id, **payload.model_dump()))
    db["chat"].update_one({"_id": chat["_id"]}, {"$set": {"last_message": payload.text, "last_message_at": now()}})
    return {"id": message_id}


# MercadoPago
@app.post("/api/mercadopago/create-preference")
def create_preference(payload: CreatePaymentRequest, db: Database = Depends(get_db),
                      mp: MercadoPagoClient = Depends(get_mercadopago)):
    if not payload.items or not payload.buyer_id:
        raise HTTPException(status_code=400, detail="Faltan datos requeridos")
    try:
        results = payments.create_preferences(db, mp, payload.items, payload.buyer_id)
    except Exception as e:
        raise to_http_error(e, "Error al crear la preferencia de pago")
    if not any("preferenceId" in r for r in results):
        raise HTTPException(status_code=502, detail={
            "message": "No se pudo crear ninguna preferencia de pago",
            "results": results,
        })
    return results


@app.get("/api/mercadopago/oauth")
def mercadopago_oauth_url(user_id: str, db: Database = Depends(get_db),
                          mp: MercadoPagoClient = Depends(get_mercadopago)):
    try:
        auth_url = payments.start_oauth(db, mp, user_id)
    except MercadoPagoError as e:
        logger.error("OAuth authorization URL failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        raise to_http_error(e, "Error al generar URL de autorización")
    return {"authUrl": auth_url}


@app.post("/api/mercadopago/oauth")
def mercadopago_oauth_exchange(payload: OAuthCodeRequest, db: Database = Depends(get_db),
                               mp: MercadoPagoClient = Depends(get_mercadopago)):
    try:
        payments.link_account(db, mp, payload.user_id, payload.code, payload.state)
    except Exception as e:
        raise to_http_error(e, "Error al conectar la cuenta")
    return {"success": True, "message": "Cuenta conectada exitosamente"}


@app.get("/api/mercadopago/oauth/callback")
def mercadopago_oauth_callback(code: Optional[str] = None, state: Optional[str] = None,
                               db: Database = Depends(get_db), mp: MercadoPagoClient = Depends(get_mercadopago)):
    target = f"{config.BASE_URL}/dashboard/seller"
    if not code or not state:
        return RedirectResponse(f"{target}?mercadopago=error", status_code=302)
    try:
        user_id = payments.consume_oauth_state(db, state)
        payments.link_account(db, mp, user_id, code)
    except (payments.PaymentError, MercadoPagoError) as e:
        logger.error("OAuth callback failed: %s", e)
        return RedirectResponse(f"{target}?mercadopago=error", status_code=302)
    return RedirectResponse(f"{target}?mercadopago=connected", status_code=302)


@app.post("/api/mercadopago/oauth/refresh")
def mercadopago_oauth_refresh(payload: UserIdRequest, db: Database = Depends(get_db),
                              mp: MercadoPagoClient = Depends(get_mercadopago)):
    try:
        account = payments.refresh_account(db, mp, payload.user_id)
    except Exception as e:
        raise to_http_error(e, "Error al renovar el token")
    return {"success": True, "refreshed_at": account.refreshed_at}


@app.get("/api/mercadopago/status/{user_id}")
def mercadopago_status(user_id: str, db: Database = Depends(get_db)):
    try:
        return payments.connection_status(db, user_id)
    except Exception as e:
        raise to_http_error(e, "Error al consultar el estado de la cuenta")


@app.post("/api/mercadopago/disconnect")
def mercadopago_disconnect(payload: UserIdRequest, db: Database = Depends(get_db)):
    try:
        payments.disconnect_account(db, payload.user_id)
    except Exception as e:
        raise to_http_error(e, "Error al desconectar la cuenta")
    return {"success": True}


@app.post("/api/mercadopago/subscription/create")
def create_subscription(payload: SubscriptionRequest, db: Database = Depends(get_db),
                        mp: MercadoPagoClient = Depends(get_mercadopago)):
    try:
        return payments.create_subscription_preference(db, mp, payload.user_id, payload.plan_type)
    except Exception as e:
        raise to_http_error(e, "Error al crear la suscripción")


@app.post("/api/mercadopago/webhook")
def mercadopago_webhook(request: Request, notification: Optional[dict] = Body(None),
                        db: Database = Depends(get_db), mp: MercadoPagoClient = Depends(get_mercadopago)):
    notification = notification or {}
    params = request.query_params
    topic = notification.get("type") or params.get("type") or params.get("topic")
    if topic != "payment":
        return {"message": "Notificación recibida"}

    data = notification.get("data")
    payment_id = (data.get("id") if isinstance(data, dict) else None) or params.get("data.id") or params.get("id")
    if not payment_id:
        raise HTTPException(status_code=400, detail="Falta el id del pago")

    try:
        result = payments.process_payment_notification(db, mp, str(payment_id), params.get("seller_id"))
    except Exception as e:
        raise to_http_error(e, "Error procesando el pago")
    return {"message": "Pago procesado", **result}


# Subscriptions
@app.get("/api/subscriptions/{user_id}/active", response_model=dict)
def active_subscription(user_id: str, db: Database = Depends(get_db)):
    doc = payments.get_active_subscription(db, user_id)
    if not doc:
        raise HTTPException(status_code=404, detail="No hay una suscripción activa")
    return serialize(doc)


@app.post("/api/subscriptions/{subscription_id}/cancel", response_model=dict)
def cancel_subscription(subscription_id: str, db: Database = Depends(get_db)):
    try:
        return serialize(payments.cancel_subscription(db, subscription_id))
    except Exception as e:
        raise to_http_error(e, "Error al cancelar la suscripción")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
