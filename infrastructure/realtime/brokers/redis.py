"""Redis Pub/Sub NotificationFanout.

Reuses the shared RedisClient from infrastructure.external.cache. Every order
update goes to one channel ``orders:updates``; dashboard gateways subscribe
and filter by ``orderId``.
"""
from __future__ import annotations

from typing import Optional

from application.ports.fanout import NotificationFanout, OrderUpdateMessage
from core.logging_config import get_logger
from infrastructure.external.cache import RedisClient, get_redis_client


logger = get_logger(__name__)

ORDER_UPDATES_CHANNEL = "orders:updates"


class RedisOrderFanout(NotificationFanout):
    def __init__(self, client: Optional[RedisClient] = None, channel: str = ORDER_UPDATES_CHANNEL) -> None:
        self._client = client
        self._channel = channel

    async def publish(self, message: OrderUpdateMessage) -> None:
        if self._client is None:
            self._client = await get_redis_client()
        receivers = await self._client.publish(self._channel, message.to_wire())
        logger.debug(
            "order_update_published",
            channel=self._channel,
            order_id=message.order_update.order_id,
            receivers=receivers,
        )

    async def aclose(self) -> None:
        self._client = None
