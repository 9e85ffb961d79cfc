"""
Critical event recorder: anomalies that need a human.

Each record is written in its own unit of work so it survives the rollback
of the order transaction that discovered it. A failed write is logged and
never propagated to the caller.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from core.clock import Clock, SystemClock
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.critical_event import CriticalEvent, CriticalEventCategory


logger = get_logger(__name__)


class CriticalEventRecorder:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        clock: Optional[Clock] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._clock = clock or SystemClock()

    async def record(
        self,
        category: CriticalEventCategory,
        reason: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[CriticalEvent]:
        payload = data or {}
        logger.error(
            "critical_event_recorded",
            category=category.value,
            reason=reason,
            data=payload,
        )
        event = CriticalEvent(
            category=category,
            reason=reason,
            data=payload,
            created_at=self._clock.now(),
        )
        try:
            async with self._uow_factory() as uow:
                return await uow.critical_events.add(event)
        except Exception as exc:
            logger.error(
                "critical_event_persist_failed",
                category=category.value,
                reason=reason,
                error=str(exc),
                exc_info=True,
            )
            return None
