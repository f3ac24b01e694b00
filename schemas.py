"""
Database Schemas for the Servido marketplace

Each Pydantic model represents a collection in MongoDB. The collection name is the lowercase of the class name.

Collections:
- user
- category
- brand
- product
- review
- question
- favorite
- chat
- message
- order
- subscription
- transaction
- oauth_state

Request bodies for the payment endpoints accept the camelCase names the
storefront sends (sellerId, buyerId, userId, planType).
"""

from datetime import datetime
from typing import List, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "seller", "admin"]


class MercadoPagoAccount(BaseModel):
    access_token: str = Field(..., description="Seller OAuth access token")
    refresh_token: Optional[str] = Field(None, description="Seller OAuth refresh token")
    user_id: Optional[str] = Field(None, description="Provider-side account id")
    nickname: Optional[str] = None
    email: Optional[str] = None
    site_id: Optional[str] = None
    connected_at: Optional[datetime] = None
    refreshed_at: Optional[datetime] = None


class SubscriptionSummary(BaseModel):
    subscription_id: str
    plan_type: str
    status: str
    start_date: datetime
    end_date: datetime


class User(BaseModel):
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Email address")
    role: Role = Field("user", description="Dashboard the user is routed to")
    is_active: bool = Field(True, description="Disabled accounts are hidden from listings")
    is_subscribed: bool = Field(False, description="Paid seller plan active")
    product_upload_limit: Optional[int] = Field(None, ge=0, description="Max products; None means unlimited")
    photo_url: Optional[str] = Field(None, description="Profile image URL")
    photo_path: Optional[str] = Field(None, description="Storage path of the profile image")
    mercadopago: Optional[MercadoPagoAccount] = None
    subscription: Optional[SubscriptionSummary] = None


class UserUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None
    is_subscribed: Optional[bool] = None
    product_upload_limit: Optional[int] = Field(None, ge=0)
    photo_url: Optional[str] = None
    photo_path: Optional[str] = None


class Category(BaseModel):
    name: str = Field(..., description="Category name")
    image_url: Optional[str] = None
    image_path: Optional[str] = Field(None, description="Storage path under categories/")


class Brand(BaseModel):
    name: str = Field(..., description="Brand name")
    image_url: Optional[str] = None
    image_path: Optional[str] = Field(None, description="Storage path under brands/")


class ProductMedia(BaseModel):
    type: Literal["image", "video"]
    url: str
    path: str = Field(..., description="Storage path under products/<seller_id>/")
    thumbnail: Optional[str] = None


class Product(BaseModel):
    seller_id: str = Field(..., description="Seller user id")
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    category: str = Field(..., description="Category id")
    brand: Optional[str] = Field(None, description="Brand id")
    media: List[ProductMedia] = Field(default_factory=list)
    is_service: bool = Field(False, description="Services carry no stock")
    stock: Optional[int] = Field(None, ge=0, description="Units in stock")
    sold: int = Field(0, ge=0, description="Units sold")
    # legacy single-image fields
    image_url: Optional[str] = None
    image_path: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    brand: Optional[str] = None
    media: Optional[List[ProductMedia]] = None
    is_service: Optional[bool] = None
    stock: Optional[int] = Field(None, ge=0)


class Review(BaseModel):
    product_id: str = Field(...)
    user_id: str = Field(...)
    user_name: str = Field("Usuario Anónimo")
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Question(BaseModel):
    product_id: str = Field(...)
    user_id: str = Field(...)
    user_name: str = Field("Usuario Anónimo")
    question: str = Field(..., min_length=10)
    answer: Optional[str] = None
    answered_by: Optional[str] = None
    answered_at: Optional[datetime] = None


class Answer(BaseModel):
    user_id: str
    answer: str = Field(..., min_length=5)
    answered_by: Optional[str] = None


class Favorite(BaseModel):
    user_id: str
    product_id: str
    name: Optional[str] = None
    price: Optional[float] = None
    image_url: Optional[str] = None


class FavoriteToggle(BaseModel):
    user_id: str
    product_id: str


class Chat(BaseModel):
    product_id: str
    buyer_id: str
    seller_id: str
    buyer_name: str = "Comprador"
    seller_name: str = "Vendedor"
    product_name: Optional[str] = None
    product_image_url: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None


class ChatStart(BaseModel):
    product_id: str
    buyer_id: str
    buyer_name: Optional[str] = None
    text: str = "¡Hola! Me interesa este producto."


class Message(BaseModel):
    chat_id: str
    sender_id: str
    sender_name: Optional[str] = None
    text: str = Field(..., min_length=1)


class MessageCreate(BaseModel):
    sender_id: str
    sender_name: Optional[str] = None
    text: str = Field(..., min_length=1)


class OrderItem(BaseModel):
    product_id: str
    title: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)


class Order(BaseModel):
    buyer_id: str = Field(..., description="Buyer user id")
    seller_id: str = Field(..., description="Seller whose account receives the payment")
    items: List[OrderItem] = Field(..., description="Line items paid through one preference")
    total: float = Field(..., ge=0, description="Total amount")
    status: str = Field("pending", description="pending, failed or the provider payment status")
    preference_id: Optional[str] = Field(None, description="Provider checkout preference")
    payment_id: Optional[str] = Field(None, description="Provider payment id once notified")


class Subscription(BaseModel):
    user_id: str
    plan_type: str
    payment_id: str
    status: Literal["active", "cancelled"] = "active"
    start_date: datetime
    end_date: datetime
    price: float = Field(..., ge=0)


class Transaction(BaseModel):
    payment_id: str = Field(..., description="Unique per provider payment")
    status: str
    external_reference: Optional[str] = None
    seller_id: Optional[str] = None
    buyer_id: Optional[str] = None
    payment_details: dict = Field(default_factory=dict)
    applied: bool = Field(False, description="Approved side effects already ran")


class OAuthState(BaseModel):
    state: str
    user_id: str


# Payment endpoint bodies

class PaymentItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    description: Optional[str] = None
    image: Optional[str] = None
    seller_id: str = Field(..., alias="sellerId")


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[PaymentItem] = Field(default_factory=list)
    buyer_id: Optional[str] = Field(None, alias="buyerId")


class OAuthCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    state: Optional[str] = None


class UserIdRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")


class SubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    plan_type: str = Field("basic", alias="planType")
