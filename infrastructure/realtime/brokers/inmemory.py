"""In-memory NotificationFanout.

Single-process only. Subscribers are in-process callbacks (SSE streams, tests).
"""
from __future__ import annotations

from typing import List
import asyncio

from application.ports.fanout import Handler, NotificationFanout, OrderUpdateMessage
from core.logging_config import get_logger


logger = get_logger(__name__)


class InMemoryOrderFanout(NotificationFanout):
    def __init__(self) -> None:
        self._handlers: List[Handler] = []
        self._lock = asyncio.Lock()

    async def publish(self, message: OrderUpdateMessage) -> None:
        async with self._lock:
            handlers = list(self._handlers)
        # 单个订阅者失败不影响其他订阅者
        for h in handlers:
            try:
                await h(message)
            except Exception as exc:
                logger.warning(
                    "fanout_handler_failed",
                    order_id=message.order_update.order_id,
                    error=str(exc),
                )

    async def subscribe(self, handler: Handler) -> None:
        async with self._lock:
            self._handlers.append(handler)

    async def unsubscribe(self, handler: Handler) -> None:
        async with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    async def aclose(self) -> None:
        async with self._lock:
            self._handlers.clear()
