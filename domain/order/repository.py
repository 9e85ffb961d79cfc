"""
订单仓储接口 - 领域层定义，基础设施层实现
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional

from domain.order.critical_event import CriticalEvent
from domain.order.entity import Order


class OrderRepository(ABC):

    @abstractmethod
    async def add(self, order: Order) -> Order:
        """新增订单"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        """只读加载"""

    @abstractmethod
    async def get_for_update(self, order_id: str) -> Optional[Order]:
        """加锁加载，事务结束前其他写者不得修改该订单"""

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """保存变更；版本号不一致时抛出 ConcurrentOrderModificationException"""

    @abstractmethod
    async def list_stuck_online_transactions(self, started_before: datetime) -> list[Order]:
        """在线交易仍为 init 且开始时间不晚于 started_before 的订单"""


class CustomerRepository(ABC):

    @abstractmethod
    async def add_total_spent(self, customer_id: str, delta: Decimal) -> bool:
        """累加客户消费总额；客户不存在时返回 False"""


class CriticalEventRepository(ABC):

    @abstractmethod
    async def add(self, event: CriticalEvent) -> CriticalEvent:
        ...

    @abstractmethod
    async def list_unresolved(self, limit: int = 100) -> list[CriticalEvent]:
        ...
