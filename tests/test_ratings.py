import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from agrimarket.cart import Cart
from agrimarket.db.models import OrderStatus, Product
from agrimarket.db.orders import get_order, place_order, rate_order_item, update_order_status
from agrimarket.db.ratings import update_product_rating
from agrimarket.errors import NotFound, RatingFailed, RatingNotAllowed

from conftest import make_product, make_user


@pytest.fixture
async def product(db, farmer):
    return await make_product(db, farmer, "Sourdough Loaf", 6.0, 20)


async def delivered_order(db, buyer, farmer, product):
    cart = Cart()
    cart.add_to_cart(product, 1)
    order = await place_order(db, cart, buyer)
    await update_order_status(db, order.id, farmer, OrderStatus.delivered)
    return order.id


@pytest.fixture
async def order_id(db, buyer, farmer, product):
    cart = Cart()
    cart.add_to_cart(product, 1)
    order = await place_order(db, cart, buyer)
    return order.id


async def deliver(db, order_id, farmer):
    await update_order_status(db, order_id, farmer, OrderStatus.delivered)


async def stored_rating(session_factory, product_id):
    async with session_factory() as session:
        stored = await session.get(Product, product_id)
        return stored.rating, stored.review_count


async def test_two_ratings_average(db, session_factory, product):
    product_id = product.id
    assert await update_product_rating(db, product_id, 4) == (4.0, 1)
    assert await update_product_rating(db, product_id, 5) == (4.5, 2)

    assert await stored_rating(session_factory, product_id) == (4.5, 2)


async def test_rating_unknown_product(db):
    with pytest.raises(NotFound):
        await update_product_rating(db, "missing", 3)


@pytest.mark.parametrize("rating", [0, 6])
async def test_rating_out_of_range(db, product, rating):
    with pytest.raises(ValueError):
        await update_product_rating(db, product.id, rating)


async def test_failed_rating_transaction_leaves_aggregate(session_factory, product, monkeypatch):
    product_id = product.id

    async def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("store unavailable"))

    async with session_factory() as session:
        monkeypatch.setattr(session, "commit", failing_commit)
        with pytest.raises(RatingFailed):
            await update_product_rating(session, product_id, 5)

    assert await stored_rating(session_factory, product_id) == (0, 0)


async def test_concurrent_ratings_are_all_counted(session_factory, product):
    product_id = product.id

    async def rate(value):
        async with session_factory() as session:
            return await update_product_rating(session, product_id, value)

    await asyncio.gather(rate(4), rate(5), rate(3))

    average, count = await stored_rating(session_factory, product_id)
    assert count == 3
    assert average == pytest.approx(4.0)


async def test_rate_delivered_item_marks_it(db, session_factory, buyer, farmer, product, order_id):
    await deliver(db, order_id, farmer)
    outcome = await rate_order_item(db, order_id, product.id, buyer, 4)

    assert (outcome.rating, outcome.review_count) == (4.0, 1)
    async with session_factory() as session:
        stored = await get_order(session, order_id)
    assert stored.items[0].is_rated


async def test_rate_twice_is_rejected(db, buyer, farmer, product, order_id):
    await deliver(db, order_id, farmer)
    await rate_order_item(db, order_id, product.id, buyer, 4)

    with pytest.raises(RatingNotAllowed):
        await rate_order_item(db, order_id, product.id, buyer, 5)


async def test_same_item_rated_at_once_counts_once(db, session_factory, buyer, farmer, product, order_id):
    product_id = product.id
    await deliver(db, order_id, farmer)

    async def rate(value):
        async with session_factory() as session:
            return await rate_order_item(session, order_id, product_id, buyer, value)

    results = await asyncio.gather(rate(4), rate(5), return_exceptions=True)

    [outcome] = [r for r in results if not isinstance(r, Exception)]
    [error] = [r for r in results if isinstance(r, Exception)]
    assert isinstance(error, RatingNotAllowed)
    assert outcome.review_count == 1
    assert await stored_rating(session_factory, product_id) == (outcome.rating, 1)


async def test_items_of_different_orders_rated_at_once(db, session_factory, buyer, farmer, product):
    product_id = product.id
    first = await delivered_order(db, buyer, farmer, product)
    second = await delivered_order(db, buyer, farmer, product)

    async def rate(order_id, value):
        async with session_factory() as session:
            return await rate_order_item(session, order_id, product_id, buyer, value)

    await asyncio.gather(rate(first, 4), rate(second, 5))

    assert await stored_rating(session_factory, product_id) == (4.5, 2)


async def test_failed_commit_neither_counts_nor_marks(session_factory, buyer, farmer, product, order_id, monkeypatch):
    product_id = product.id
    async with session_factory() as session:
        await deliver(session, order_id, farmer)

    async def failing_commit():
        raise OperationalError("COMMIT", {}, Exception("store unavailable"))

    async with session_factory() as session:
        monkeypatch.setattr(session, "commit", failing_commit)
        with pytest.raises(RatingFailed):
            await rate_order_item(session, order_id, product_id, buyer, 5)

    assert await stored_rating(session_factory, product_id) == (0, 0)
    async with session_factory() as session:
        assert not (await get_order(session, order_id)).items[0].is_rated


async def test_rate_pending_order_is_rejected(db, buyer, product, order_id):
    with pytest.raises(RatingNotAllowed):
        await rate_order_item(db, order_id, product.id, buyer, 4)


async def test_rate_someone_elses_order_is_rejected(db, farmer, product, order_id):
    await deliver(db, order_id, farmer)
    other = await make_user(db, "nell@market.io")

    with pytest.raises(RatingNotAllowed):
        await rate_order_item(db, order_id, product.id, other, 4)


async def test_rate_item_not_in_order(db, buyer, farmer, order_id):
    await deliver(db, order_id, farmer)
    with pytest.raises(NotFound):
        await rate_order_item(db, order_id, "not-in-order", buyer, 4)
