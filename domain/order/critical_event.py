"""
关键事件 - 需要人工复核的异常记录（只追加）
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class CriticalEventCategory(str, Enum):
    ONLINE_TRANSACTION = "online_transaction"
    FINANCIALS = "financials"
    CUSTOMER = "customer"
    WEBHOOK = "webhook"


@dataclass
class CriticalEvent:
    category: CriticalEventCategory
    reason: str
    created_at: datetime
    data: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    comment: Optional[str] = None
