"""
时钟抽象：后台任务与应用服务通过注入获取当前时间，测试可替换为固定时钟。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)
