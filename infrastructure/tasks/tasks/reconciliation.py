"""Reconciliation Celery task: one scheduler tick per beat."""
from __future__ import annotations

import asyncio

from celery import shared_task

from ..utils.base_task import BaseTask
from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


async def _run_tick() -> dict:
    from infrastructure.container import (
        build_reconciliation_scheduler,
        redis_tick_lock,
        select_fanout,
    )
    from infrastructure.database import dispose_engine
    from infrastructure.external.cache import init_redis_client, shutdown_redis_client
    from infrastructure.external.payments import build_provider_registry
    from infrastructure.unit_of_work import sqlalchemy_uow_factory

    registry = build_provider_registry()
    redis = await init_redis_client() if settings.redis.url else None
    fanout = select_fanout(redis=redis)
    tick_lock = redis_tick_lock(redis, settings.reconciliation.lock_timeout_seconds) if redis else None
    scheduler = build_reconciliation_scheduler(
        sqlalchemy_uow_factory(),
        registry=registry,
        fanout=fanout,
        tick_lock=tick_lock,
    )
    try:
        report = await scheduler.run_once()
    finally:
        await fanout.aclose()
        await registry.aclose()
        if redis is not None:
            await shutdown_redis_client()
        # 每次 asyncio.run 都是新事件循环，连接池不能跨循环复用
        await dispose_engine()
    return {
        "stuck_orders": report.stuck_orders,
        "orders_processed": report.orders_processed,
        "transactions_applied": report.transactions_applied,
        "cleared": report.cleared,
        "failed": report.failed,
        "deferred": report.deferred,
        "aborted": report.aborted,
        "lock_not_acquired": report.lock_not_acquired,
    }


@shared_task(
    bind=True,
    base=BaseTask,
    name="ledger.reconcile_stuck_transactions",
    ignore_result=False,
)
def reconcile_stuck_transactions(self) -> dict:
    """Resolve online transactions stuck in ``init`` past the expiration window.

    The tick never raises; failures are logged and the next beat retries.
    """
    result = asyncio.run(_run_tick())
    logger.info("reconciliation_task_finished", task_id=self.request.id, **result)
    return result
