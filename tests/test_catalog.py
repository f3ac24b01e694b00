from bson import ObjectId

import database


def product_body(seller_id, **fields):
    body = {
        "seller_id": seller_id,
        "name": "Taladro percutor",
        "description": "750W con maletín",
        "price": 45000,
        "category": "herramientas",
        "media": [{"type": "image", "url": "https://cdn.test/t.jpg", "path": f"products/{seller_id}/t.jpg"}],
        "stock": 5,
    }
    body.update(fields)
    return body


def test_root(client):
    assert client.get("/").json() == {"message": "Servido Marketplace API running"}


def test_diagnostics_report_marketplace_state(client, db, monkeypatch, make_seller, make_product):
    make_product(make_seller())
    monkeypatch.setattr(database, "db", db)
    body = client.get("/test").json()
    assert body["database"] == "✅ Connected & Working"
    assert body["collections"]["user"] == 1
    assert body["collections"]["product"] == 1
    assert body["collections"]["order"] == 0
    assert body["mercadopago"]["platform_token"] is True
    assert body["mercadopago"]["webhook_url"] == "https://api.servido.test/api/mercadopago/webhook"


def test_user_crud(client):
    resp = client.post("/api/users", json={"name": "Ana", "email": "ana@example.com"})
    assert resp.status_code == 200
    user_id = resp.json()["id"]

    assert client.post("/api/users", json={"name": "Ana", "email": "ana@example.com"}).status_code == 400

    resp = client.patch(f"/api/users/{user_id}", json={"role": "admin", "is_active": False})
    assert resp.json()["role"] == "admin"
    assert resp.json()["is_active"] is False

    admins = client.get("/api/users", params={"role": "admin"}).json()
    assert [u["id"] for u in admins] == [user_id]
    invalid = client.get("/api/users/not-an-id")
    assert invalid.status_code == 400
    assert invalid.json()["detail"] == "ID inválido"
    assert client.get(f"/api/users/{ObjectId()}").json()["detail"] == "Usuario no encontrado"


def test_categories_and_brands(client):
    client.post("/api/categories", json={"name": "Servicios"})
    cat_id = client.post("/api/categories", json={"name": "Hogar", "image_path": "categories/hogar.jpg"}).json()["id"]
    assert [c["name"] for c in client.get("/api/categories").json()] == ["Hogar", "Servicios"]
    assert client.delete(f"/api/categories/{cat_id}").json() == {"ok": True, "image_path": "categories/hogar.jpg"}
    assert client.delete(f"/api/categories/{cat_id}").status_code == 404

    brand_id = client.post("/api/brands", json={"name": "Bosch"}).json()["id"]
    assert client.get("/api/brands").json()[0]["id"] == brand_id


def test_product_lifecycle(client, make_seller):
    seller = make_seller()
    resp = client.post("/api/products", json=product_body(seller))
    assert resp.status_code == 200
    product_id = resp.json()["id"]

    found = client.get("/api/products", params={"q": "taladro", "seller_id": seller}).json()
    assert [p["id"] for p in found] == [product_id]

    resp = client.patch(f"/api/products/{product_id}", json={"price": 42000, "stock": 3})
    assert resp.json()["price"] == 42000
    assert resp.json()["stock"] == 3

    resp = client.delete(f"/api/products/{product_id}")
    assert resp.json() == {"ok": True, "media_paths": [f"products/{seller}/t.jpg"]}
    assert client.get(f"/api/products/{product_id}").status_code == 404


def test_service_products_drop_stock(client, make_seller):
    seller = make_seller()
    product_id = client.post("/api/products", json=product_body(seller, is_service=True, stock=9)).json()["id"]
    product = client.get(f"/api/products/{product_id}").json()
    assert product["stock"] is None
    assert client.get("/api/products", params={"is_service": True}).json()[0]["id"] == product_id


def test_unsubscribed_seller_cannot_publish(client, make_seller):
    seller = make_seller(is_subscribed=False)
    assert client.post("/api/products", json=product_body(seller)).status_code == 403


def test_upload_limit(client, make_seller):
    seller = make_seller(product_upload_limit=1)
    assert client.post("/api/products", json=product_body(seller)).status_code == 200
    resp = client.post("/api/products", json=product_body(seller))
    assert resp.status_code == 403


def test_media_required_and_scoped(client, make_seller):
    seller = make_seller()
    assert client.post("/api/products", json=product_body(seller, media=[])).status_code == 400
    stray = [{"type": "image", "url": "https://cdn.test/x.jpg", "path": "products/someone-else/x.jpg"}]
    assert client.post("/api/products", json=product_body(seller, media=stray)).status_code == 400


def test_one_review_per_user(client, make_seller, make_product):
    product_id = make_product(make_seller())
    review = {"product_id": product_id, "user_id": "u1", "user_name": "Ana", "rating": 4}
    assert client.post("/api/reviews", json=review).status_code == 200
    assert client.post("/api/reviews", json=review).status_code == 409
    client.post("/api/reviews", json={**review, "user_id": "u2", "rating": 5})

    summary = client.get(f"/api/products/{product_id}/reviews").json()
    assert summary["count"] == 2
    assert summary["average_rating"] == 4.5


def test_only_seller_answers_questions(client, make_seller, make_product):
    seller = make_seller()
    product_id = make_product(seller)
    resp = client.post("/api/questions", json={
        "product_id": product_id, "user_id": "buyer", "question": "¿Hacen envíos al interior?",
    })
    question_id = resp.json()["id"]
    assert client.post("/api/questions", json={"product_id": product_id, "user_id": "b", "question": "corta"}).status_code == 422

    denied = client.post(f"/api/questions/{question_id}/answer", json={"user_id": "buyer", "answer": "Sí, claro"})
    assert denied.status_code == 403

    answered = client.post(f"/api/questions/{question_id}/answer", json={"user_id": seller, "answer": "Sí, a todo el país"})
    assert answered.json()["answer"] == "Sí, a todo el país"
    assert answered.json()["answered_at"]


def test_favorite_toggle(client, make_seller, make_product):
    product_id = make_product(make_seller(), name="Mate")
    first = client.post("/api/favorites/toggle", json={"user_id": "u1", "product_id": product_id}).json()
    assert first["favorite"] is True
    favorites = client.get("/api/favorites", params={"user_id": "u1"}).json()
    assert favorites[0]["name"] == "Mate"
    assert favorites[0]["image_url"] == "https://cdn.test/a.jpg"

    assert client.post("/api/favorites/toggle", json={"user_id": "u1", "product_id": product_id}).json() == {"favorite": False}
    assert client.get("/api/favorites", params={"user_id": "u1"}).json() == []


def test_chat_is_reused_and_messages_flow(client, db, make_seller, make_product):
    seller = make_seller()
    product_id = make_product(seller)

    first = client.post("/api/chats", json={"product_id": product_id, "buyer_id": "buyer", "buyer_name": "Ana"}).json()
    again = client.post("/api/chats", json={"product_id": product_id, "buyer_id": "buyer"}).json()
    assert first["created"] is True
    assert again == {"id": first["id"], "created": False}

    chat_id = first["id"]
    assert client.post(f"/api/chats/{chat_id}/messages", json={"sender_id": seller, "text": "¡Hola Ana!"}).status_code == 200
    assert client.post(f"/api/chats/{chat_id}/messages", json={"sender_id": "intruder", "text": "hola"}).status_code == 403

    messages = client.get(f"/api/chats/{chat_id}/messages").json()
    assert [m["text"] for m in messages] == ["¡Hola! Me interesa este producto.", "¡Hola Ana!"]
    assert db["chat"].find_one({"_id": ObjectId(chat_id)})["last_message"] == "¡Hola Ana!"
    assert [c["id"] for c in client.get("/api/chats", params={"user_id": seller}).json()] == [chat_id]
