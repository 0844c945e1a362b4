# agrimarket/db/ratings.py
import logging
from typing import Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import SQLAlchemyError

from agrimarket.db.models import Product, OrderItem
from agrimarket.errors import NotFound, RatingFailed

logger = logging.getLogger(__name__)


async def apply_rating(db: AsyncSession, product_id: str, rating: int) -> Tuple[float, int]:
    """Fold one rating into the product's running average, without committing.

    The new average is computed by the store in a single ``UPDATE`` from the
    row's current values, so concurrent ratings serialize on the row instead
    of overwriting each other. Returns ``(average, count)`` as written.
    """
    if not 1 <= rating <= 5:
        raise ValueError("rating must be between 1 and 5")

    result = await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(
            rating=(Product.rating * Product.review_count + rating) / (Product.review_count + 1),
            review_count=Product.review_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound("Product not found")

    row = (await db.execute(select(Product.rating, Product.review_count).filter(Product.id == product_id))).one()
    return row.rating, row.review_count


async def update_product_rating(db: AsyncSession, product_id: str, rating: int) -> Tuple[float, int]:
    try:
        average, count = await apply_rating(db, product_id, rating)
        await db.commit()
    except NotFound:
        await db.rollback()
        raise
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Rating transaction failed for product %s", product_id)
        raise RatingFailed()

    logger.info("Product %s rated %s, average %.2f over %s", product_id, rating, average, count)
    return average, count


async def claim_order_item(db: AsyncSession, item_id: int) -> bool:
    """Set ``is_rated`` on an item that is not rated yet; False if someone got there first."""
    result = await db.execute(
        update(OrderItem)
        .where(OrderItem.id == item_id, OrderItem.is_rated.is_(False))
        .values(is_rated=True)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
