# agrimarket/feed.py
"""Live order lists for buyers and farmers."""
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict

from sqlalchemy.exc import SQLAlchemyError

from agrimarket.db.models import Order, Role
from agrimarket.db.orders import list_buyer_orders, list_seller_orders

logger = logging.getLogger(__name__)


class FeedScope(str, Enum):
    buyer = "buyer"
    seller = "seller"

    @classmethod
    def for_role(cls, role: Role) -> "FeedScope":
        return cls.seller if role is Role.farmer else cls.buyer


@dataclass(frozen=True)
class OrderChange:
    order_id: str
    buyer_id: str
    seller_ids: frozenset
    status: str

    @classmethod
    def from_order(cls, order: Order) -> "OrderChange":
        return cls(
            order_id=order.id,
            buyer_id=order.user_id,
            seller_ids=order.seller_ids,
            status=order.status.value,
        )

    def as_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "buyerId": self.buyer_id,
            "sellerIds": sorted(self.seller_ids),
            "status": self.status,
        }


@dataclass(eq=False)
class Subscription:
    id: int
    user_id: str
    scope: FeedScope
    callback: Callable
    _feed: "OrderFeed" = field(repr=False, default=None)

    def matches(self, change: OrderChange) -> bool:
        if self.scope is FeedScope.buyer:
            return change.buyer_id == self.user_id
        return self.user_id in change.seller_ids

    @property
    def active(self) -> bool:
        return self._feed is not None and self.id in self._feed._subscriptions

    def cancel(self):
        if self._feed is not None:
            self._feed._subscriptions.pop(self.id, None)
            self._feed = None


class OrderFeed:
    """Pushes a subscriber's full, newest-first order list after every change
    to one of its orders, until the subscription is cancelled."""

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def __len__(self):
        return len(self._subscriptions)

    async def fetch(self, user_id: str, scope: FeedScope):
        async with self._session_factory() as db:
            if scope is FeedScope.seller:
                return await list_seller_orders(db, user_id)
            return await list_buyer_orders(db, user_id)

    async def subscribe(self, user_id: str, scope: FeedScope, callback: Callable) -> Subscription:
        """Register ``callback`` and push the current list to it.

        If that first push fails the subscription comes back already
        cancelled; check ``active`` before relying on it.
        """
        subscription = Subscription(next(self._ids), user_id, scope, callback, self)
        self._subscriptions[subscription.id] = subscription
        if not await self._deliver(subscription):
            subscription.cancel()
        return subscription

    async def publish(self, change: OrderChange):
        for subscription in list(self._subscriptions.values()):
            if subscription.active and subscription.matches(change):
                await self._deliver(subscription)

    async def _deliver(self, subscription: Subscription) -> bool:
        # publish runs after the change is committed, so a failed refresh is only logged
        try:
            orders = await self.fetch(subscription.user_id, subscription.scope)
        except SQLAlchemyError:
            logger.exception("Order feed refresh failed for subscription %s", subscription.id)
            return False
        try:
            result = subscription.callback(orders)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Order feed callback failed, dropping subscription %s", subscription.id)
            subscription.cancel()
            return False
        return True
