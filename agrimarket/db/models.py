# agrimarket/db/models.py
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, String, Float, Integer, Boolean, ForeignKey, DateTime, Enum
from sqlalchemy.orm import relationship

from agrimarket.db.database import Base


def new_id() -> str:
    return uuid.uuid4().hex


class Capability(str, PyEnum):
    buy = "buy"
    sell = "sell"
    administer = "administer"


class Role(str, PyEnum):
    buyer = "buyer"
    farmer = "farmer"
    admin = "admin"

    @property
    def capabilities(self) -> frozenset:
        return ROLE_CAPABILITIES[self]

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities


ROLE_CAPABILITIES = {
    Role.buyer: frozenset({Capability.buy}),
    Role.farmer: frozenset({Capability.sell}),
    Role.admin: frozenset({Capability.administer}),
}


class OrderStatus(str, PyEnum):
    pending = "Pending"
    shipped = "Shipped"
    delivered = "Delivered"
    cancelled = "Cancelled"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in ORDER_TRANSITIONS.get(self, frozenset())


# Shipped is only ever read from the store, never produced here
ORDER_TRANSITIONS = {
    OrderStatus.pending: frozenset({OrderStatus.delivered, OrderStatus.cancelled}),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    __tablename__ = "users"

    id = Column(String(32), primary_key=True, default=new_id)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(Role, native_enum=False), default=Role.buyer, nullable=False)
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    zip = Column(String, nullable=True)

    products = relationship("Product", back_populates="farmer")
    orders = relationship("Order", back_populates="buyer")


class Product(Base):
    __tablename__ = "products"

    id = Column(String(32), primary_key=True, default=new_id)
    uid = Column(String(32), ForeignKey("users.id"), index=True, nullable=False)  # owning farmer
    seller = Column(String, nullable=False)  # farmer display name
    name = Column(String, index=True, nullable=False)
    description = Column(String, nullable=True, default="")
    price = Column(Float, nullable=False)
    stock = Column(Float, nullable=False, default=0)
    image = Column(String, nullable=True)
    ai_hint = Column(String, nullable=True)
    rating = Column(Float, nullable=False, default=0)
    review_count = Column(Integer, nullable=False, default=0)

    farmer = relationship("User", back_populates="products")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(String(32), ForeignKey("users.id"), index=True, nullable=False)
    buyer_name = Column(String, nullable=False)
    total = Column(Float, nullable=False)
    status = Column(
        Enum(OrderStatus, native_enum=False, values_callable=_enum_values),
        default=OrderStatus.pending,
        nullable=False,
    )
    date = Column(DateTime(timezone=True), default=_utcnow, index=True)
    shipping_address = Column(String, nullable=True)

    buyer = relationship("User", back_populates="orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )

    @property
    def seller_ids(self) -> frozenset:
        return frozenset(item.seller_id for item in self.items)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), index=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    # Snapshot of the product at checkout; not a foreign key so deleting a listing keeps history
    product_id = Column(String(32), nullable=False)
    seller_id = Column(String(32), index=True, nullable=False)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    image = Column(String, nullable=True)
    ai_hint = Column(String, nullable=True)
    is_rated = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")
