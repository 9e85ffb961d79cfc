"""Order update fanout brokers (in-memory, Redis)."""

from .inmemory import InMemoryOrderFanout
from .redis import RedisOrderFanout

__all__ = [
    "InMemoryOrderFanout",
    "RedisOrderFanout",
]
