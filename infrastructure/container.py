"""
应用装配：根据配置组装账本服务与对账调度器

API 生命周期与 Celery 任务共用这里的工厂，保证两条驱动路径的依赖一致。
"""
from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional

from application.ports.fanout import NotificationFanout
from application.ports.payment_provider import ProviderRegistry
from application.services.critical_event_service import CriticalEventRecorder
from application.services.order_financials_service import OrderFinancialsService
from application.services.reconciliation import ReconciliationScheduler, TickLockFactory
from core.clock import Clock, SystemClock
from core.config import Settings, settings as default_settings
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.external.cache import RedisClient
from infrastructure.realtime.brokers import InMemoryOrderFanout, RedisOrderFanout


logger = get_logger(__name__)

RECONCILIATION_LOCK_KEY = "reconciliation:tick"

UowFactory = Callable[[], AbstractUnitOfWork]


def select_fanout(cfg: Optional[Settings] = None, redis: Optional[RedisClient] = None) -> NotificationFanout:
    """选择推送通道：auto -> redis(if url) else inmemory"""
    cfg = cfg or default_settings
    backend = (cfg.FANOUT_BACKEND or "auto").lower()
    if backend in {"redis", "auto"} and cfg.redis.url and redis is not None:
        logger.info("fanout_backend_selected", backend="redis")
        return RedisOrderFanout(redis)
    if backend == "redis":
        logger.warning("fanout_redis_unavailable", message="Redis client unavailable, falling back to in-memory fanout")
    logger.info("fanout_backend_selected", backend="inmemory")
    return InMemoryOrderFanout()


def redis_tick_lock(client: RedisClient, timeout: int) -> TickLockFactory:
    def factory():
        return client.try_lock(RECONCILIATION_LOCK_KEY, timeout=timeout)

    return factory


def build_order_financials_service(
    uow_factory: UowFactory,
    *,
    registry: ProviderRegistry,
    fanout: NotificationFanout,
    clock: Optional[Clock] = None,
    cfg: Optional[Settings] = None,
) -> OrderFinancialsService:
    cfg = cfg or default_settings
    clock = clock or SystemClock()
    return OrderFinancialsService(
        uow_factory,
        registry=registry,
        fanout=fanout,
        critical_events=CriticalEventRecorder(uow_factory, clock),
        clock=clock,
        min_order_amount=cfg.ledger.min_order_amount,
        currency_eps=cfg.ledger.currency_eps,
        currency=cfg.ledger.currency,
    )


def build_reconciliation_scheduler(
    uow_factory: UowFactory,
    *,
    registry: ProviderRegistry,
    fanout: NotificationFanout,
    tick_lock: Optional[TickLockFactory] = None,
    clock: Optional[Clock] = None,
    cfg: Optional[Settings] = None,
) -> ReconciliationScheduler:
    cfg = cfg or default_settings
    clock = clock or SystemClock()
    rc = cfg.reconciliation
    return ReconciliationScheduler(
        uow_factory,
        registry=registry,
        fanout=fanout,
        critical_events=CriticalEventRecorder(uow_factory, clock),
        expiration=timedelta(seconds=rc.expiration_seconds),
        clock=clock,
        interval=rc.effective_interval,
        lookback_margin=timedelta(seconds=rc.lookback_margin_seconds),
        tick_lock=tick_lock,
        currency_eps=cfg.ledger.currency_eps,
    )
