# agrimarket/db/orders.py
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from agrimarket.cart import Cart
from agrimarket.db import ratings
from agrimarket.db.models import Order, OrderItem, OrderStatus, Product, User, Role
from agrimarket.errors import (
    EmptyCart, NotFound, Forbidden, OrderFailed, InsufficientStock,
    RatingFailed, RatingNotAllowed, InvalidTransition, StoreUnavailable,
)

logger = logging.getLogger(__name__)


def format_address(user: User) -> Optional[str]:
    parts = [p for p in (user.address, user.city, user.zip) if p]
    return ", ".join(parts) or None


# Оформление заказа

async def place_order(db: AsyncSession, cart: Cart, buyer: User, shipping_address: str = None) -> Order:
    """Turn ``cart`` into a ``Pending`` order and take its quantities out of stock.

    The stock decrements and the order insert share one transaction. If the
    commit fails nothing is applied and the cart is left as it was; on success
    the cart is cleared. A decrement only applies while enough stock is left,
    so a product that sold out since it was added rolls the whole order back.
    """
    lines = cart.lines
    if not lines:
        raise EmptyCart()

    # rollback expires loaded objects; read what the error paths need up front
    buyer_id = buyer.id
    order = Order(
        user_id=buyer_id,
        buyer_name=buyer.full_name,
        total=round(cart.cart_total, 2),
        status=OrderStatus.pending,
        shipping_address=shipping_address or format_address(buyer),
    )
    try:
        for position, line in enumerate(lines):
            snapshot = line.product
            result = await db.execute(
                update(Product)
                .where(Product.id == snapshot.id, Product.stock >= line.quantity)
                .values(stock=Product.stock - line.quantity)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                exists = await db.scalar(select(Product.id).filter(Product.id == snapshot.id))
                await db.rollback()
                if exists is None:
                    raise NotFound(f"Product {snapshot.name} is no longer available")
                raise InsufficientStock(snapshot.id, snapshot.name)

            order.items.append(OrderItem(
                position=position,
                product_id=snapshot.id,
                seller_id=snapshot.seller_id,
                name=snapshot.name,
                price=snapshot.price,
                quantity=line.quantity,
                image=snapshot.image,
                ai_hint=snapshot.ai_hint,
                is_rated=False,
            ))
        db.add(order)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Order processing failed for buyer %s", buyer_id)
        raise OrderFailed()

    cart.clear_cart()
    logger.info("Order %s placed by %s: %s lines, total %.2f", order.id, buyer_id, len(lines), order.total)
    return order


# Чтение заказов

def _orders_query():
    return select(Order).options(selectinload(Order.items)).order_by(Order.date.desc())


async def list_buyer_orders(db: AsyncSession, buyer_id: str):
    result = await db.execute(_orders_query().filter(Order.user_id == buyer_id))
    return result.scalars().all()


async def list_seller_orders(db: AsyncSession, seller_id: str):
    # order_items.seller_id is indexed, so this is a lookup rather than a scan
    result = await db.execute(_orders_query().filter(Order.items.any(OrderItem.seller_id == seller_id)))
    return result.scalars().all()


async def get_order(db: AsyncSession, order_id: str, for_update: bool = False) -> Order:
    query = select(Order).options(selectinload(Order.items)).filter(Order.id == order_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    order = result.scalar_one_or_none()
    if not order:
        raise NotFound("Order not found")
    return order


async def get_order_for_user(db: AsyncSession, order_id: str, user: User) -> Order:
    order = await get_order(db, order_id)
    if user.role is Role.admin or order.user_id == user.id or user.id in order.seller_ids:
        return order
    # do not reveal that someone else's order exists
    raise NotFound("Order not found")


# Статусы

async def update_order_status(db: AsyncSession, order_id: str, farmer: User, status: OrderStatus) -> Order:
    order = await get_order(db, order_id, for_update=True)
    if farmer.id not in order.seller_ids:
        await db.rollback()
        raise Forbidden("Only farmers selling in this order can change its status")
    previous = order.status
    if not previous.can_transition_to(status):
        await db.rollback()
        raise InvalidTransition(f"Cannot move order from {previous.value} to {status.value}")

    order.status = status
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Status update failed for order %s", order_id)
        raise StoreUnavailable()
    logger.info("Order %s moved %s -> %s by %s", order_id, previous.value, status.value, farmer.id)
    return order


# Оценки

@dataclass
class RatingOutcome:
    order: Order
    product_id: str
    rating: float
    review_count: int


async def rate_order_item(db: AsyncSession, order_id: str, product_id: str, buyer: User, rating: int) -> RatingOutcome:
    """Rate one delivered, not yet rated item of the buyer's own order.

    Claiming the item and folding the rating into the product commit as one
    transaction, so an item is counted exactly once even when the same
    rating is submitted twice at the same time.
    """
    order = await get_order(db, order_id)
    if order.user_id != buyer.id:
        raise RatingNotAllowed("Only the buyer can rate items of this order")
    if order.status is not OrderStatus.delivered:
        raise RatingNotAllowed("Only delivered orders can be rated")
    item = next((i for i in order.items if i.product_id == product_id), None)
    if item is None:
        raise NotFound("Item not found in this order")
    if item.is_rated:
        raise RatingNotAllowed("This item has already been rated")

    try:
        if not await ratings.claim_order_item(db, item.id):
            await db.rollback()
            raise RatingNotAllowed("This item has already been rated")
        average, count = await ratings.apply_rating(db, product_id, rating)
        await db.commit()
    except (NotFound, ValueError):
        await db.rollback()
        raise
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Rating transaction failed for order %s product %s", order_id, product_id)
        raise RatingFailed()

    logger.info("Order %s item %s rated %s, average %.2f over %s", order_id, product_id, rating, average, count)
    return RatingOutcome(order=order, product_id=product_id, rating=average, review_count=count)
