"""
Database Schemas for RunMate

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
"""
from datetime import datetime
from typing import List, Optional, Literal

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]


class User(BaseModel):
    email: EmailStr
    password_hash: Optional[str] = Field(None, description="Salted password hash, absent for social logins")
    is_social: bool = False
    name: str = ""
    photo: str = ""
    is_admin: bool = False


class Review(BaseModel):
    id: str
    user_id: str
    user_name: str = ""
    rating: int = Field(..., ge=1, le=5)
    comment: str
    created_at: datetime


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    photos: List[str] = []
    reviews: List[Review] = []
    rating: float = Field(0, ge=0, le=5)
    num_reviews: int = 0
    reviews_version: int = 0
    created_by: str


class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    zip_code: str
    country: str


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderItem(BaseModel):
    id: str
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    is_reviewed: bool = False


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: str = "cash_on_delivery"
    shipping_address: ShippingAddress
    stripe_session_id: Optional[str] = None
    stock_restored: bool = False


class Principal(BaseModel):
    """The authenticated caller every workflow receives."""
    id: str
    email: str = ""
    name: str = ""
    is_admin: bool = False
