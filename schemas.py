"""
Database Schemas for the Bookstore

Each Pydantic model represents a MongoDB collection.

- User -> "users" (document id is the email)
- Book -> "books"
- Order -> "orders"
- Review -> "reviews"
- Comment -> "comments"

CartLineItem is not a collection: cart lines live in the serialized
cart record (see cart.py).
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, EmailStr

ROLE_USER = 1
ROLE_ADMIN = 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, also the document id")
    password_hash: str = Field(..., description="Hashed password")
    role: int = Field(ROLE_USER, description="1 = user, 2 = admin")


class Book(BaseModel):
    title: str = Field(..., min_length=1, description="Book title")
    author: str = Field("", description="Author name")
    description: Optional[str] = Field(None, description="Book description")
    category: str = Field("", description="Book category")
    price: float = Field(..., ge=0, description="Price in VND")
    rating: float = Field(0.0, ge=0, le=5, description="Average rating of approved reviews")
    image_url: Optional[str] = Field(None, description="Cover image URL")
    quantity: int = Field(0, ge=0, description="Copies in stock")


class BookUpdate(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    rating: Optional[float] = Field(None, ge=0, le=5)
    image_url: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)


class CartLineItem(BaseModel):
    book_id: str
    title: str
    author: str = ""
    price: float = 0.0
    image_url: Optional[str] = None
    quantity: int = Field(1, ge=1)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELIVERED = "DELIVERED"


class OrderItem(BaseModel):
    book_id: str
    title: str
    price: float = Field(..., gt=0)
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: Optional[str] = None
    user_email: str
    phone: str
    address: str
    payment_method: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    status: OrderStatus = Field(OrderStatus.PENDING, validate_default=True)
    reviewed: bool = False


class Review(BaseModel):
    order_id: str
    book_id: str
    book_title: str = ""
    user_id: Optional[str] = None
    user_email: str
    user_name: str = ""
    rating: int = Field(..., ge=1, le=5)
    comment: str
    timestamp: datetime = Field(default_factory=utcnow)
    approved: bool = True


class Comment(BaseModel):
    book_title: str
    user_email: str
    content: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
