"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Book -> "book" collection
- Order -> "order" collection
"""

from datetime import datetime
from pydantic import BaseModel, Field, EmailStr, computed_field, ConfigDict
from bson import ObjectId
from typing import Optional, List, Literal

Role = Literal["user", "admin"]
PaymentMethod = Literal["cash", "visa"]
OrderStatus = Literal["pending", "delivered", "cancelled"]
StockStatus = Literal["inStock", "outOfStock"]


def stock_status_for(quantity: int) -> str:
    return "inStock" if quantity > 0 else "outOfStock"


class CartEntry(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    book: ObjectId = Field(..., description="Referenced Book _id")
    quantity: int = Field(1, ge=1, description="Requested quantity")


class FavoriteEntry(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    book: ObjectId = Field(..., description="Referenced Book _id")


class User(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="PBKDF2 hash of the password")
    phone: str = Field(..., description="Contact phone")
    address: str = Field(..., description="Home address")
    age: int = Field(..., ge=0, description="Age in years")
    role: Role = Field("user", description="Role for access control")
    cart: List[CartEntry] = Field(default_factory=list)
    favorites: List[FavoriteEntry] = Field(default_factory=list)
    orders: List[ObjectId] = Field(default_factory=list, description="Order _ids, oldest first")
    reset_password_token: Optional[str] = Field(None, description="sha256 of the mailed reset token")
    reset_password_expire: Optional[datetime] = None


class Book(BaseModel):
    name: str = Field(..., min_length=1, description="Book name")
    title: str = Field(..., min_length=1, description="Book title")
    category: str = Field(..., min_length=1, description="Category")
    code: str = Field("", description="Shelf or ISBN code")
    description: str = Field("", description="Description")
    price: float = Field(..., ge=0, description="Current unit price")
    quantity: int = Field(..., ge=0, description="Units in stock")
    offer: float = Field(0, ge=0, le=100, description="Offer percentage")
    imgs: List[str] = Field(default_factory=list, description="Stored image paths")

    @computed_field
    @property
    def stock_status(self) -> StockStatus:
        return stock_status_for(self.quantity)


class OrderItem(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    book: ObjectId = Field(..., description="Referenced Book _id")
    quantity: int = Field(..., ge=1, description="Quantity ordered")
    price: float = Field(..., ge=0, description="Unit price at time of order")


class Order(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user: Optional[ObjectId] = Field(None, description="Ordering user, None for guest checkout")
    items: List[OrderItem] = Field(..., min_length=1, description="Ordered items")
    total_amount: float = Field(..., ge=0, description="Total after discount")
    government: str = Field(..., description="Shipping government / region")
    full_name: str = Field(..., description="Recipient name")
    address: str = Field(..., description="Shipping address")
    payment_method: PaymentMethod = Field(..., description="How the customer pays")
    sale_code: Optional[str] = Field(None, description="Applied discount code")
    notes: Optional[str] = Field(None, description="Optional notes")
    status: OrderStatus = Field("pending", description="Order status")
