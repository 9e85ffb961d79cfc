"""
Stuck online transaction reconciliation.

An order whose online transaction stays in ``init`` past the expiration
window lost its gateway round-trip (browser closed, redirect failed, webhook
never arrived). Each tick lists what the providers actually did and drives
the same idempotent ledger path the webhook uses.

The scheduler is an explicit object owned by the process lifecycle
(``start``/``stop``) with injected store, adapters and clock; ``run_once``
performs a single tick and is what the Celery beat task calls.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from application.dtos.payments import CanonicalTransaction, StuckTransactionRef
from application.ports.fanout import NotificationFanout
from application.ports.payment_provider import ProviderRegistry
from application.services.critical_event_service import CriticalEventRecorder
from application.services.order_financials_service import to_ledger_transaction
from application.services.order_updates import (
    build_order_update,
    financial_patches,
    forward_total_spent,
)
from core.clock import Clock, SystemClock
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.common.money import CURRENCY_EPS, ZERO
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.applier import TransactionApplier
from domain.order.critical_event import CriticalEventCategory
from domain.order.entity import (
    SYSTEM_ACTOR,
    FinancialEvent,
    OnlineProvider,
    Order,
    OrderStatus,
)
from domain.order.exceptions import AmountGuardViolationException
from domain.order.online_transaction import OnlineTransactionLifecycle


logger = get_logger(__name__)

TickLockFactory = Callable[[], AbstractAsyncContextManager[bool]]


class OrderOutcome(str, Enum):
    SKIPPED = "skipped"
    CLEARED = "cleared"
    ANOMALY = "anomaly"
    UPDATED = "updated"


@dataclass
class ReconciliationReport:
    stuck_orders: int = 0
    orders_processed: int = 0
    transactions_matched: int = 0
    transactions_applied: int = 0
    cleared: int = 0
    skipped: int = 0
    anomalies: int = 0
    failed: int = 0
    deferred: int = 0
    aborted: bool = False
    lock_not_acquired: bool = False
    failed_order_ids: list[str] = field(default_factory=list)


@dataclass
class _OrderResult:
    outcome: OrderOutcome
    applied: int = 0
    order: Optional[Order] = None
    last_event: Optional[FinancialEvent] = None
    critical: list[tuple[CriticalEventCategory, str, dict]] = field(default_factory=list)
    customer_missing_delta: Optional[Decimal] = None


class ReconciliationScheduler:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        *,
        registry: ProviderRegistry,
        fanout: NotificationFanout,
        critical_events: CriticalEventRecorder,
        expiration: timedelta,
        clock: Optional[Clock] = None,
        interval: Optional[float] = None,
        lookback_margin: timedelta = timedelta(minutes=1),
        tick_lock: Optional[TickLockFactory] = None,
        currency_eps: Decimal = CURRENCY_EPS,
    ) -> None:
        self._uow_factory = uow_factory
        self._registry = registry
        self._fanout = fanout
        self._critical = critical_events
        self._expiration = expiration
        self._clock = clock or SystemClock()
        self._interval = interval if interval is not None else expiration.total_seconds()
        self._lookback_margin = lookback_margin
        self._tick_lock = tick_lock
        self._applier = TransactionApplier(currency_eps=currency_eps)
        self._lifecycle = OnlineTransactionLifecycle()
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    # ---- lifecycle ----

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="reconciliation-scheduler")
        logger.info("reconciliation_scheduler_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("reconciliation_scheduler_stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    # ---- tick ----

    async def run_once(self) -> ReconciliationReport:
        """One tick; never raises, the next tick retries from scratch."""
        try:
            if self._tick_lock is None:
                return await self._tick()
            async with self._tick_lock() as acquired:
                if not acquired:
                    logger.info("reconciliation_tick_skipped_locked")
                    return ReconciliationReport(lock_not_acquired=True)
                return await self._tick()
        except Exception as exc:
            logger.error("reconciliation_tick_failed", error=str(exc), exc_info=True)
            return ReconciliationReport(aborted=True)

    async def _tick(self) -> ReconciliationReport:
        report = ReconciliationReport()
        threshold = self._clock.now() - self._expiration

        async with self._uow_factory() as uow:
            stuck = await uow.orders.list_stuck_online_transactions(threshold)
        report.stuck_orders = len(stuck)
        if not stuck:
            logger.debug("reconciliation_nothing_stuck", threshold=threshold.isoformat())
            return report

        matches, unreachable = await self._collect_matches(stuck)
        report.transactions_matched = sum(len(v) for v in matches.values())

        for order in stuck:
            # 渠道不可达时无法区分“弃单”与“未查到”，留给下一轮
            if unreachable.intersection(order.online_transaction.providers):
                report.deferred += 1
                continue
            try:
                result = await self._reconcile_order(order.id, matches.get(order.id, []), threshold)
            except Exception as exc:
                report.failed += 1
                report.failed_order_ids.append(order.id)
                logger.error(
                    "reconciliation_order_failed",
                    order_id=order.id,
                    error=str(exc),
                    exc_info=True,
                )
                continue

            report.orders_processed += 1
            if result.outcome == OrderOutcome.SKIPPED:
                report.skipped += 1
            elif result.outcome == OrderOutcome.CLEARED:
                report.cleared += 1
            elif result.outcome == OrderOutcome.ANOMALY:
                report.anomalies += 1
            report.transactions_applied += result.applied
            await self._after_commit(result)

        logger.info(
            "reconciliation_tick_completed",
            stuck_orders=report.stuck_orders,
            orders_processed=report.orders_processed,
            transactions_matched=report.transactions_matched,
            transactions_applied=report.transactions_applied,
            cleared=report.cleared,
            anomalies=report.anomalies,
            failed=report.failed,
            deferred=report.deferred,
        )
        return report

    async def _collect_matches(
        self, stuck: list[Order]
    ) -> tuple[dict[str, list[CanonicalTransaction]], set[OnlineProvider]]:
        by_provider: dict[OnlineProvider, list[StuckTransactionRef]] = defaultdict(list)
        for order in stuck:
            tx = order.online_transaction
            ref = StuckTransactionRef(
                order_id=order.id,
                transaction_type=tx.type,
                started_at=tx.started_at - self._lookback_margin,
                transaction_ids=list(tx.transaction_ids),
            )
            for provider in tx.providers:
                by_provider[provider].append(ref)

        matches: dict[str, dict[str, CanonicalTransaction]] = defaultdict(dict)
        unreachable: set[OnlineProvider] = set()
        for provider, refs in by_provider.items():
            try:
                adapter = self._registry.get(provider)
                raw_items = await adapter.fetch_external(refs)
            except Exception as exc:
                unreachable.add(provider)
                logger.error(
                    "reconciliation_provider_fetch_failed",
                    provider=provider.value,
                    orders=len(refs),
                    error=str(exc),
                )
                continue
            for raw in raw_items:
                tx = adapter.normalize_external(raw)
                if not tx.order_id:
                    continue
                key = tx.transaction_id or f"{provider.value}:{len(matches[tx.order_id])}"
                matches[tx.order_id][key] = tx
            logger.info(
                "reconciliation_provider_fetched",
                provider=provider.value,
                orders=len(refs),
                transactions=len(raw_items),
            )
        return {order_id: list(found.values()) for order_id, found in matches.items()}, unreachable

    async def _reconcile_order(
        self,
        order_id: str,
        found: list[CanonicalTransaction],
        threshold: datetime,
    ) -> _OrderResult:
        now = self._clock.now()
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_update(order_id)
            # webhook 可能已抢先处理
            if order is None or not self._lifecycle.is_stuck(order, threshold):
                return _OrderResult(OrderOutcome.SKIPPED)

            if not found:
                saved = await uow.orders.save(self._lifecycle.clear(order))
                logger.info("reconciliation_transaction_abandoned", order_id=order_id)
                return _OrderResult(OrderOutcome.CLEARED, order=saved)

            if order.current_status == OrderStatus.DRAFT:
                saved = await uow.orders.save(self._lifecycle.clear(order))
                return _OrderResult(
                    OrderOutcome.ANOMALY,
                    order=saved,
                    critical=[(
                        CriticalEventCategory.ONLINE_TRANSACTION,
                        "stuck_transaction_on_draft_order",
                        {
                            "order_id": order_id,
                            "transactions": [t.model_dump(mode="json") for t in found],
                        },
                    )],
                )

            result = _OrderResult(OrderOutcome.UPDATED)
            working = self._lifecycle.mark_processing(
                order,
                [t.transaction_id for t in found if t.transaction_id],
                providers=[t.provider for t in found],
                confirmation_url=next((t.confirmation_url for t in found if t.confirmation_url), None),
            )
            delta = ZERO
            for tx in found:
                if not tx.finished:
                    continue
                missing = tx.missing_fields()
                if missing:
                    result.critical.append((
                        CriticalEventCategory.ONLINE_TRANSACTION,
                        "finished_transaction_missing_fields",
                        {"order_id": order_id, "missing": missing, "transaction": tx.model_dump(mode="json")},
                    ))
                    if tx.transaction_id:
                        working = self._lifecycle.resolve(working, tx.transaction_id)
                    continue
                try:
                    applied = self._applier.apply_order_financials(
                        working, to_ledger_transaction(tx), actor=SYSTEM_ACTOR, now=now
                    )
                except (AmountGuardViolationException, DomainValidationException) as exc:
                    result.critical.append((
                        CriticalEventCategory.FINANCIALS,
                        "ledger_rejected_gateway_transaction",
                        {"order_id": order_id, "error": exc.message, "transaction": tx.model_dump(mode="json")},
                    ))
                    working = self._lifecycle.resolve(working, tx.transaction_id)
                    continue
                working = self._lifecycle.resolve(applied.order, tx.transaction_id)
                if applied.applied:
                    result.applied += 1
                    delta += applied.net_paid_delta
                    result.last_event = applied.event

            pending = working.online_transaction
            if pending is not None and not pending.transaction_ids:
                working = self._lifecycle.clear(working)
            saved = await uow.orders.save(working)
            if delta != ZERO and saved.current_status == OrderStatus.COMPLETED:
                if not await forward_total_spent(uow, saved, delta):
                    result.customer_missing_delta = delta
            result.order = saved

        logger.info(
            "reconciliation_order_updated",
            order_id=order_id,
            matched=len(found),
            applied=result.applied,
            net_paid_delta=delta,
            pending=list(saved.online_transaction.transaction_ids) if saved.online_transaction else [],
        )
        return result

    async def _after_commit(self, result: _OrderResult) -> None:
        for category, reason, data in result.critical:
            await self._critical.record(category, reason, data)
        if result.customer_missing_delta is not None and result.order is not None:
            await self._critical.record(
                CriticalEventCategory.CUSTOMER,
                "customer_not_found_for_total_spent",
                {
                    "order_id": result.order.id,
                    "customer_id": result.order.customer_id,
                    "delta": str(result.customer_missing_delta),
                },
            )
        if result.order is None or result.outcome == OrderOutcome.SKIPPED:
            return
        message = build_order_update(result.order, financial_patches(result.order), result.last_event)
        try:
            await self._fanout.publish(message)
        except Exception as exc:
            logger.error("order_update_publish_failed", order_id=result.order.id, error=str(exc))
