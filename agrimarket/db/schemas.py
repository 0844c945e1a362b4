# agrimarket/db/schemas.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from agrimarket.db.models import OrderStatus, Role


def _one_decimal_place(value: float) -> float:
    if round(value, 1) != value:
        raise ValueError("quantity may carry at most one decimal place")
    return value


# Field names go over the wire in camelCase (aiHint, reviewCount, isRated ...)
class CamelModel(BaseModel):
    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


# Пользователи
class UserCreate(CamelModel):
    full_name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    role: Role = Role.buyer
    address: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None


class UserUpdate(CamelModel):
    full_name: Optional[str] = Field(None, min_length=1)
    address: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None


class User(CamelModel):
    id: str
    full_name: str
    email: str
    role: Role
    address: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str


class Token(CamelModel):
    access_token: str
    token_type: str = "bearer"
    role: Role


# Товары
class ProductBase(CamelModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = ""
    price: float = Field(..., ge=0)
    stock: float = Field(..., ge=0)
    image: Optional[str] = None
    ai_hint: Optional[str] = None


class ProductCreate(ProductBase):
    pass


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    ai_hint: Optional[str] = None


class Product(ProductBase):
    id: str
    uid: str
    seller: str
    rating: float = 0
    review_count: int = 0


# Корзина
class CartAdd(CamelModel):
    product_id: str
    quantity: float = Field(1, gt=0)

    @field_validator("quantity")
    @classmethod
    def check_quantity(cls, value: float) -> float:
        return _one_decimal_place(value)


class CartQuantity(CamelModel):
    quantity: float

    @field_validator("quantity")
    @classmethod
    def check_quantity(cls, value: float) -> float:
        return _one_decimal_place(value)


class CartLine(CamelModel):
    product_id: str
    name: str
    price: float
    image: Optional[str] = None
    ai_hint: Optional[str] = None
    quantity: float
    subtotal: float


class Cart(CamelModel):
    items: List[CartLine] = []
    item_count: float = 0
    total: float = 0


class CartUpdate(CamelModel):
    status: str
    line: Optional[CartLine] = None
    cart: Cart


# Заказы
class CheckoutRequest(CamelModel):
    shipping_address: Optional[str] = None


class CheckoutResponse(CamelModel):
    order_id: str


class OrderItem(CamelModel):
    product_id: str
    seller_id: str
    name: str
    price: float
    quantity: float
    image: Optional[str] = None
    ai_hint: Optional[str] = None
    is_rated: bool = False


class Order(CamelModel):
    id: str
    user_id: str
    buyer_name: str
    items: List[OrderItem] = []
    total: float
    status: OrderStatus
    date: Optional[datetime] = None
    shipping_address: Optional[str] = None


class StatusUpdate(CamelModel):
    status: OrderStatus


class RatingRequest(CamelModel):
    rating: int = Field(..., ge=1, le=5)


class RatingResponse(CamelModel):
    product_id: str
    rating: float
    review_count: int
