"""
Database Schemas for the Pools & Landscaping storefront

Each stored model maps to a MongoDB collection: Product -> "products",
CartLine -> "cart_items", Order -> "orders", OrderLine -> "order_items",
User -> "users". Request/response payloads for the API live at the bottom.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, Dict
from datetime import datetime

ORDER_SCHEMA_VERSION = 2

# ------------ Auth & User ------------
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    full_name: Optional[str] = None
    phone: Optional[str] = None
    metadata: Dict[str, str] = {}

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class AuthUser(BaseModel):
    id: str
    email: EmailStr
    metadata: Dict[str, str] = {}

# ------------ Catalogue ------------
class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category_id: Optional[str] = None
    image_url: Optional[str] = None

class StockInfo(BaseModel):
    stock: int
    name: str
    price: float

# ------------ Cart ------------
class CartLine(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    added_at: Optional[datetime] = None

class CartLineView(BaseModel):
    id: str
    product_id: str
    name: str
    price: float
    quantity: int
    image_url: Optional[str] = None
    category: str = "General"
    description: str = ""
    stock: int = 0
    added_at: Optional[datetime] = None

class CartAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class CartQuantityUpdate(BaseModel):
    quantity: int

# ------------ Stock validation ------------
class StockIssue(BaseModel):
    product_id: str
    name: str
    stock: int
    requested: int

class ValidationResult(BaseModel):
    offending: List[StockIssue] = []
    low_stock: List[StockIssue] = []
    stocks: Dict[str, StockInfo] = {}

    @property
    def ok(self) -> bool:
        return not self.offending

# ------------ Orders ------------
class CustomerInfo(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""

class Order(BaseModel):
    user_id: str
    customer_name: str
    customer_email: str
    customer_phone: str = ""
    total_amount: float = Field(..., ge=0)
    status: Literal["pending", "confirmed", "ready", "completed", "cancelled"] = "pending"
    payment_method: Literal["cash"] = "cash"
    payment_status: Literal["pending", "paid", "failed"] = "pending"
    channel: str = "mobile_app"
    idempotency_key: str
    schema_version: int = ORDER_SCHEMA_VERSION

class OrderLine(BaseModel):
    order_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)

class CheckoutRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=8, max_length=128)
    customer_name: Optional[str] = Field(None, description="Name entered at the re-prompt")

class CheckoutResult(BaseModel):
    order_id: str
    status: Literal["created", "replayed"]
    total_amount: float
    customer_name: str
    lines: List[OrderLine]
    low_stock: List[StockIssue] = []
    # None on a replay; the cart is not touched again
    cart_cleared: Optional[bool] = True
