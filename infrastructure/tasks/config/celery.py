"""Celery application for the ledger background jobs.

Reconciliation ticks get their own queue so a backlog of other jobs never
delays resolving stuck gateway transactions. A tick must finish before the
redis tick lock expires, otherwise a second worker could start an
overlapping tick; the time limits are derived from that lock timeout.
"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE, RECONCILIATION_QUEUE


logger = get_logger(__name__)

CELERY_IMPORTS = (
    "infrastructure.tasks.tasks",
)

_lock_timeout = settings.reconciliation.lock_timeout_seconds


celery_app = Celery("order_ledger")

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 对账结果只用于观察最近几次 tick
    result_expires=settings.reconciliation.effective_interval * 4,
    # worker 崩溃时任务重新投递
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    # tick 不得比对账锁活得更久
    task_soft_time_limit=max(_lock_timeout - 30, 30),
    task_time_limit=_lock_timeout,
    task_default_queue="default",
    task_queues=(
        Queue(RECONCILIATION_QUEUE),
        Queue("default"),
    ),
    task_routes={
        "ledger.reconcile_stuck_transactions": {"queue": RECONCILIATION_QUEUE},
        "ledger.*": {"queue": "default"},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
)

celery_app.conf.imports = CELERY_IMPORTS

# 测试环境同步执行，无需 broker
if (settings.ENVIRONMENT or "").lower() in {"test", "testing"}:
    celery_app.conf.task_always_eager = True

celery_app.autodiscover_tasks(packages=CELERY_IMPORTS)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        reconciliation_queue=RECONCILIATION_QUEUE,
        time_limit=sender.conf.task_time_limit,
    )
