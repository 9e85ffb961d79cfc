"""
Redis客户端 - 命名空间隔离、发布订阅与分布式锁
"""
from __future__ import annotations

import asyncio
import json
import socket
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

from redis import asyncio as aioredis
from redis.exceptions import LockError, RedisError

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)


class RedisClient:
    """
    Redis客户端封装

    特性:
    - 命名空间隔离
    - 自动序列化
    - 非阻塞分布式锁
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        serializer: Optional[Callable[[Any], str]] = None,
    ):
        self._client = client
        self._namespace = namespace.strip(":")
        self._serializer = serializer or self._default_serializer

    @property
    def raw(self) -> aioredis.Redis:
        return self._client

    def _format_key(self, key: str) -> str:
        """格式化键名，添加命名空间前缀"""
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    def _default_serializer(self, value: Any) -> str:
        if isinstance(value, (str, int, float)):
            return str(value)
        return json.dumps(value, default=str, ensure_ascii=False)

    async def publish(self, channel: str, message: Any) -> int:
        """发布消息到频道，返回接收者数量"""
        formatted_channel = self._format_key(channel)
        return await self._client.publish(formatted_channel, self._serializer(message))

    @asynccontextmanager
    async def try_lock(self, key: str, timeout: int = 60) -> AsyncIterator[bool]:
        """
        非阻塞分布式锁

        拿不到锁时 yield False，调用方自行决定跳过；锁在 timeout 秒后自动过期。
        """
        lock_key = f"lock:{self._format_key(key)}"
        lock = self._client.lock(lock_key, timeout=timeout, blocking=False)
        acquired = await lock.acquire()
        try:
            yield bool(acquired)
        finally:
            if acquired:
                try:
                    await lock.release()
                except LockError:
                    # 锁已过期被他人持有
                    logger.warning("redis_lock_release_failed", key=lock_key)

    async def ping(self) -> bool:
        return await self._client.ping()

    async def close(self) -> None:
        await self._client.aclose()


_redis_client: Optional[RedisClient] = None
_lock = asyncio.Lock()


def _keepalive_options() -> dict:
    if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
        return {
            socket.TCP_KEEPIDLE: 1,
            socket.TCP_KEEPINTVL: 1,
            socket.TCP_KEEPCNT: 3,
        }
    return {}


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """初始化全局Redis客户端"""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    async with _lock:
        if _redis_client is not None:
            return _redis_client

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL 未配置，无法初始化Redis客户端")

        client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
            socket_keepalive=True,
            socket_keepalive_options=_keepalive_options(),
            **kwargs,
        )
        try:
            await client.ping()
        except RedisError as exc:
            logger.error("redis_init_failed", error=str(exc))
            await client.aclose()
            raise

        _redis_client = RedisClient(client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_client_initialized", namespace=namespace or settings.redis.namespace)
        return _redis_client


async def get_redis_client() -> RedisClient:
    """获取全局Redis客户端实例"""
    if _redis_client is None:
        return await init_redis_client()
    return _redis_client


async def shutdown_redis_client() -> None:
    """关闭Redis连接"""
    global _redis_client

    if _redis_client is not None:
        try:
            await _redis_client.close()
            logger.info("redis_client_closed")
        except RedisError as exc:
            logger.error("redis_client_close_failed", error=str(exc))
        finally:
            _redis_client = None
