"""
Database Schemas for the storefront

Each Pydantic model corresponds to a MongoDB document shape. Collection names
are plural: users, products, categories, orders, admins. Request bodies that
enter the order flow are validated here as well, before any service sees them.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# ---------- Users ----------

class TelegramUser(BaseModel):
    """The ``user`` object embedded in Telegram WebApp init data."""

    id: int
    first_name: str = ""
    last_name: Optional[str] = None
    username: Optional[str] = None
    language_code: Optional[str] = None
    is_premium: bool = False
    photo_url: Optional[str] = None


class Preferences(BaseModel):
    notifications: bool = True
    language: str = "en"
    currency: str = "USD"


class CartItem(BaseModel):
    productId: str
    quantity: int = Field(..., ge=1)
    selectedVariant: Optional[str] = None


class Cart(BaseModel):
    items: List[CartItem] = []
    updatedAt: Optional[datetime] = None


class User(BaseModel):
    telegramId: int
    firstName: str
    lastName: Optional[str] = None
    username: Optional[str] = None
    languageCode: Optional[str] = None
    photoUrl: Optional[str] = None
    isActive: bool = True
    isPremium: bool = False
    preferences: Preferences = Field(default_factory=Preferences)
    favoriteProducts: List[str] = []
    cart: Cart = Field(default_factory=Cart)
    totalOrders: int = 0
    totalSpent: float = 0


# ---------- Catalog ----------

class Review(BaseModel):
    userId: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    createdAt: datetime


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str
    description: str = ""
    price: float = Field(..., ge=0)
    comparePrice: Optional[float] = Field(None, ge=0)
    discountPercentage: float = Field(0, ge=0, le=100)
    currency: str = "USD"
    categoryId: Optional[str] = None
    images: List[str] = []
    thumbnail: Optional[str] = None
    stock: int = Field(0, ge=0)
    trackStock: bool = True
    isActive: bool = True
    isFeatured: bool = False
    tags: List[str] = []
    viewCount: int = 0
    orderCount: int = 0
    rating: float = 0
    reviewCount: int = 0
    reviews: List[Review] = []
    sortOrder: int = 0


class Category(BaseModel):
    name: str = Field(..., min_length=2)
    slug: str = Field(..., min_length=2)
    description: Optional[str] = None
    parentId: Optional[str] = None
    productCount: int = 0
    isActive: bool = True
    sortOrder: int = 0


# ---------- Orders ----------

class Address(BaseModel):
    firstName: str = Field(..., min_length=1)
    lastName: str = Field(..., min_length=1)
    company: Optional[str] = None
    address1: str = Field(..., min_length=1)
    address2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postalCode: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


class OrderItemIn(BaseModel):
    """A requested line. Client-side name/price fields are not trusted."""

    productId: str
    quantity: int = Field(..., ge=1)
    selectedVariant: Optional[str] = None


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    # accepted for compatibility with the Mini-App; recomputed server-side
    subtotal: Optional[float] = Field(None, ge=0)
    total: Optional[float] = Field(None, ge=0)
    shippingCost: Optional[float] = Field(None, ge=0)
    taxAmount: Optional[float] = Field(None, ge=0)
    discountAmount: Optional[float] = Field(None, ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    paymentMethod: Optional[str] = None
    shippingAddress: Address
    billingAddress: Optional[Address] = None
    notes: Optional[str] = None


# ---------- Admins ----------

class Admin(BaseModel):
    email: str
    passwordHash: str = Field(..., description="BCrypt hash of the password")
    firstName: str = "Admin"
    lastName: str = "User"
    role: str = "admin"
    isActive: bool = True
    permissions: List[str] = ["all"]
