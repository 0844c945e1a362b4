# agrimarket/events.py
import json
import logging

import aio_pika

from agrimarket.feed import OrderChange

logger = logging.getLogger(__name__)


class OrderEventPublisher:
    """Publishes order changes to a durable RabbitMQ queue.

    Without a broker URL, or when the broker cannot be reached at startup,
    publishing is a no-op.
    """

    def __init__(self, url: str = None, queue_name: str = "order_events"):
        self.url = url
        self.queue_name = queue_name
        self._connection = None
        self._channel = None

    @property
    def enabled(self) -> bool:
        return self._channel is not None

    async def connect(self):
        if not self.url:
            logger.info("RABBITMQ_URL not set, order events disabled")
            return
        try:
            self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            await self._channel.declare_queue(self.queue_name, durable=True)
            logger.info("Publishing order events to queue %s", self.queue_name)
        except aio_pika.exceptions.AMQPConnectionError:
            logger.warning("RabbitMQ not available at startup, order events disabled")
            self._connection = None
            self._channel = None

    async def publish(self, change: OrderChange):
        if self._channel is None:
            return
        message = aio_pika.Message(
            body=json.dumps(change.as_dict()).encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self._channel.default_exchange.publish(message, routing_key=self.queue_name)
        except (aio_pika.exceptions.AMQPError, aio_pika.exceptions.ChannelInvalidStateError):
            logger.exception("Failed to publish order event for %s", change.order_id)

    async def close(self):
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
