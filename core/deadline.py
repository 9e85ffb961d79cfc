"""
请求截止时间（协作式取消令牌）

由中间件为每个请求创建并显式传入应用服务；服务在事务内的每个挂起点
调用 check()，调用方已超时则抛出异常，让 Unit of Work 回滚。
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from domain.common.exceptions import RequestDeadlineExceededException


class Deadline:
    def __init__(
        self,
        expires_at: Optional[float],
        *,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._expires_at = expires_at
        self._monotonic = monotonic
        self._cancelled = False

    @classmethod
    def after(cls, seconds: float, *, monotonic: Callable[[], float] = time.monotonic) -> "Deadline":
        return cls(monotonic() + seconds, monotonic=monotonic)

    @classmethod
    def unbounded(cls) -> "Deadline":
        """后台任务使用：永不过期"""
        return cls(None)

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._monotonic())

    @property
    def expired(self) -> bool:
        if self._cancelled:
            return True
        return self._expires_at is not None and self._monotonic() >= self._expires_at

    def check(self, stage: Optional[str] = None) -> None:
        if self.expired:
            raise RequestDeadlineExceededException(stage)
