"""
订单财务应用服务

每个操作都是一次 “加载（加锁） → 纯领域变换 → 保存” 的事务；
提交成功后再把补丁交给 fanout。请求截止时间在每个挂起点检查。
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Callable, Optional

from application.dtos.orders import (
    ChangeStatusCommand,
    CreateOnlinePaymentCommand,
    OnlinePaymentResult,
    OrderDTO,
    RecordFinancialEventCommand,
)
from application.dtos.payments import (
    CanonicalTransaction,
    PaymentParams,
    RefundBatchResult,
    RefundParams,
    RefundTask,
    WebhookOutcome,
    WebhookRequest,
)
from application.ports.fanout import NotificationFanout, OrderPatch
from application.ports.payment_provider import OnlinePaymentCreationFailedException, ProviderRegistry
from application.services.critical_event_service import CriticalEventRecorder
from application.services.order_updates import (
    build_order_update,
    financial_patches,
    forward_total_spent,
    status_patches,
    voided_event_patch,
)
from core.clock import Clock, SystemClock
from core.deadline import Deadline
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.common.money import CURRENCY_EPS, ZERO, is_greater_currency, is_less_currency
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.applier import ApplyResult, LedgerTransaction, TransactionApplier
from domain.order.critical_event import CriticalEventCategory
from domain.order.entity import (
    SYSTEM_ACTOR,
    Actor,
    FinancialEvent,
    FinancialMethod,
    OnlineTransactionStatus,
    Order,
    OrderStatus,
    TransactionType,
)
from domain.order.exceptions import (
    AmountGuardViolationException,
    NothingToRefundException,
    OrderAlreadyPaidException,
    OrderNotActiveException,
    OrderNotFoundException,
)
from domain.order.online_transaction import OnlineTransactionLifecycle
from domain.order.status_machine import OrderStatusMachine


logger = get_logger(__name__)


class OrderFinancialsService:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        *,
        registry: ProviderRegistry,
        fanout: NotificationFanout,
        critical_events: CriticalEventRecorder,
        clock: Optional[Clock] = None,
        min_order_amount: Decimal = Decimal("1000"),
        currency_eps: Decimal = CURRENCY_EPS,
        currency: str = "RUB",
    ) -> None:
        self._uow_factory = uow_factory
        self._registry = registry
        self._fanout = fanout
        self._critical = critical_events
        self._clock = clock or SystemClock()
        self._eps = currency_eps
        self._currency = currency
        self._applier = TransactionApplier(currency_eps=currency_eps)
        self._machine = OrderStatusMachine(min_order_amount=min_order_amount, currency_eps=currency_eps)
        self._lifecycle = OnlineTransactionLifecycle()

    # ---- reads ----

    async def get_order(self, order_id: str) -> OrderDTO:
        async with self._uow_factory() as uow:
            order = await uow.orders.get(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        return OrderDTO.from_entity(order)

    # ---- ledger writes ----

    async def record_event(
        self,
        order_id: str,
        cmd: RecordFinancialEventCommand,
        *,
        actor: Actor,
        deadline: Deadline,
    ) -> OrderDTO:
        """登记线下付款/退款；在线卡交易只能由网关回传"""
        if cmd.method == FinancialMethod.CARD_ONLINE:
            raise DomainValidationException(
                "Online card transactions are recorded from the gateway", field="method"
            )
        tx = LedgerTransaction(
            transaction_type=cmd.transaction_type,
            method=cmd.method,
            amount=cmd.amount,
            provider=cmd.provider,
            transaction_id=cmd.transaction_id,
            original_payment_id=cmd.original_payment_id,
            external_reference=cmd.external_reference,
        )
        result = await self._apply(order_id, tx, actor=actor, deadline=deadline, require_confirmed=True)
        return OrderDTO.from_entity(result.order)

    async def apply_transaction(
        self,
        order_id: str,
        tx: LedgerTransaction,
        *,
        actor: Actor,
        deadline: Deadline,
    ) -> ApplyResult:
        return await self._apply(order_id, tx, actor=actor, deadline=deadline)

    async def _apply(
        self,
        order_id: str,
        tx: LedgerTransaction,
        *,
        actor: Actor,
        deadline: Deadline,
        require_confirmed: bool = False,
    ) -> ApplyResult:
        customer_missing = False
        async with self._uow_factory() as uow:
            order = await self._load_for_update(uow, order_id)
            deadline.check("order_loaded")
            if require_confirmed and order.current_status == OrderStatus.DRAFT:
                raise OrderNotActiveException(order.id, order.current_status.value)

            result = self._applier.apply_order_financials(order, tx, actor=actor, now=self._clock.now())
            updated = result.order
            if tx.transaction_id:
                updated = self._lifecycle.resolve(updated, tx.transaction_id)
            if updated is order:
                logger.info(
                    "order_financials_noop",
                    order_id=order_id,
                    transaction_id=tx.transaction_id,
                    mark_as_failed=tx.mark_as_failed,
                )
                return result

            deadline.check("before_save")
            saved = await uow.orders.save(updated)
            if result.applied and saved.current_status == OrderStatus.COMPLETED:
                customer_missing = not await forward_total_spent(uow, saved, result.net_paid_delta)
            deadline.check("before_commit")

        logger.info(
            "order_financials_applied",
            order_id=order_id,
            transaction_type=tx.transaction_type.value,
            method=tx.method.value,
            amount=tx.amount,
            transaction_id=tx.transaction_id,
            applied=result.applied,
            net_paid=saved.net_paid,
            state=saved.financials.state.value,
        )
        if customer_missing:
            await self._report_missing_customer(saved, result.net_paid_delta)
        await self._publish(saved, financial_patches(saved), result.event)
        return ApplyResult(
            order=saved,
            net_paid=saved.net_paid,
            net_paid_delta=result.net_paid_delta,
            event=result.event,
            applied=result.applied,
        )

    async def void_event(
        self,
        order_id: str,
        event_id: str,
        *,
        note: Optional[str],
        actor: Actor,
        deadline: Deadline,
    ) -> OrderDTO:
        customer_missing = False
        async with self._uow_factory() as uow:
            order = await self._load_for_update(uow, order_id)
            deadline.check("order_loaded")
            result = self._applier.void_event(order, event_id, note=note, actor=actor, now=self._clock.now())
            deadline.check("before_save")
            saved = await uow.orders.save(result.order)
            if saved.current_status == OrderStatus.COMPLETED:
                customer_missing = not await forward_total_spent(uow, saved, result.net_paid_delta)
            deadline.check("before_commit")

        logger.info(
            "financial_event_voided",
            order_id=order_id,
            event_id=event_id,
            net_paid_delta=result.net_paid_delta,
            state=saved.financials.state.value,
        )
        if customer_missing:
            await self._report_missing_customer(saved, result.net_paid_delta)
        patches = financial_patches(saved) + [voided_event_patch(saved, result.event)]
        await self._publish(saved, patches, saved.financials.last_event)
        return OrderDTO.from_entity(saved)

    # ---- status ----

    async def confirm_order(self, order_id: str, *, actor: Actor, deadline: Deadline) -> OrderDTO:
        async with self._uow_factory() as uow:
            order = await self._load_for_update(uow, order_id)
            deadline.check("order_loaded")
            saved = await uow.orders.save(self._machine.confirm(order, actor=actor, now=self._clock.now()))
            deadline.check("before_commit")
        logger.info("order_confirmed", order_id=order_id)
        await self._publish(saved, status_patches(saved))
        return OrderDTO.from_entity(saved)

    async def change_status(
        self,
        order_id: str,
        cmd: ChangeStatusCommand,
        *,
        actor: Actor,
        deadline: Deadline,
    ) -> OrderDTO:
        customer_missing = False
        async with self._uow_factory() as uow:
            order = await self._load_for_update(uow, order_id)
            deadline.check("order_loaded")
            moved = self._machine.advance(
                order,
                cmd.action,
                actor=actor,
                now=self._clock.now(),
                target_status=cmd.target_status,
                reason=cmd.reason,
            )
            deadline.check("before_save")
            saved = await uow.orders.save(moved)
            if saved.current_status == OrderStatus.COMPLETED:
                customer_missing = not await forward_total_spent(uow, saved, saved.net_paid)
            deadline.check("before_commit")

        logger.info(
            "order_status_changed",
            order_id=order_id,
            action=cmd.action.value,
            from_status=order.current_status.value,
            to_status=saved.current_status.value,
        )
        if customer_missing:
            await self._report_missing_customer(saved, saved.net_paid)
        await self._publish(saved, status_patches(saved))
        return OrderDTO.from_entity(saved)

    # ---- online transactions ----

    async def create_online_payment(
        self,
        order_id: str,
        cmd: CreateOnlinePaymentCommand,
        *,
        deadline: Deadline,
    ) -> OnlinePaymentResult:
        adapter = self._registry.get(cmd.provider)

        async with self._uow_factory() as uow:
            order = await self._load_for_update(uow, order_id)
            deadline.check("order_loaded")
            if not order.is_active:
                raise OrderNotActiveException(order.id, order.current_status.value)
            if not is_less_currency(order.net_paid, order.total_amount, self._eps):
                raise OrderAlreadyPaidException(order.id)
            if is_greater_currency(order.net_paid + cmd.amount, order.total_amount, self._eps):
                raise AmountGuardViolationException(
                    "Payment would exceed the amount due",
                    amount=cmd.amount,
                    net_paid=order.net_paid,
                    limit=order.total_amount,
                )
            pending = self._lifecycle.begin(
                order,
                TransactionType.PAYMENT,
                [cmd.provider],
                now=self._clock.now(),
                amount=cmd.amount,
            )
            await uow.orders.save(pending)

        params = PaymentParams(
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            amount=cmd.amount,
            currency=self._currency,
            payment_token=cmd.payment_token,
            return_url=cmd.return_url,
            description=f"Order #{order.order_number}",
        )
        try:
            deadline.check("before_provider_call")
            creation = await adapter.create_payment(params)
        except Exception:
            await self._clear_pending(order_id, TransactionType.PAYMENT)
            raise

        if creation.error or not creation.payment_id:
            await self._clear_pending(order_id, TransactionType.PAYMENT)
            logger.warning(
                "online_payment_create_failed",
                order_id=order_id,
                provider=cmd.provider.value,
                error=creation.error,
            )
            raise OnlinePaymentCreationFailedException(
                creation.error or "Provider returned no payment id",
                provider=cmd.provider.value,
            )

        saved = await self._mark_processing(
            order_id, [creation.payment_id], confirmation_url=creation.confirmation_url
        )
        logger.info(
            "online_payment_created",
            order_id=order_id,
            provider=cmd.provider.value,
            payment_id=creation.payment_id,
        )
        if saved is not None:
            await self._publish(saved, financial_patches(saved))
        return OnlinePaymentResult(
            order_id=order_id,
            payment_id=creation.payment_id,
            confirmation_url=creation.confirmation_url,
        )

    async def create_online_refunds(self, order_id: str, *, deadline: Deadline) -> RefundBatchResult:
        """退回订单上所有尚未退款的在线卡支付"""
        async with self._uow_factory() as uow:
            order = await self._load_for_update(uow, order_id)
            deadline.check("order_loaded")
            stats = self._applier.card_refund_stats(order)
            if not stats.payments:
                raise NothingToRefundException(order.id)
            if is_greater_currency(stats.total, order.net_paid, self._eps):
                raise AmountGuardViolationException(
                    "Refund exceeds the net paid amount",
                    amount=stats.total,
                    net_paid=order.net_paid,
                    limit=order.net_paid,
                )
            adapters = {p: self._registry.get(p) for p in stats.providers}
            pending = self._lifecycle.begin(
                order,
                TransactionType.REFUND,
                stats.providers,
                now=self._clock.now(),
                amount=stats.total,
            )
            await uow.orders.save(pending)

        params = RefundParams(
            order_id=order.id,
            order_number=order.order_number,
            currency=self._currency,
            description=f"Refund for order #{order.order_number}",
        )
        merged = RefundBatchResult()
        try:
            for provider, adapter in adapters.items():
                deadline.check("before_provider_call")
                tasks = [
                    RefundTask(payment_id=p.transaction_id, amount=p.amount)
                    for p in stats.by_provider[provider]
                ]
                batch = await adapter.create_refund(tasks, params)
                merged.refund_ids.extend(batch.refund_ids)
                merged.errors.extend(batch.errors)
        except Exception:
            if not merged.refund_ids:
                await self._clear_pending(order_id, TransactionType.REFUND)
                raise
            logger.error("online_refund_batch_interrupted", order_id=order_id, exc_info=True)

        for failure in merged.errors:
            logger.warning(
                "online_refund_task_failed",
                order_id=order_id,
                payment_id=failure.task.payment_id,
                reason=failure.reason,
            )

        if not merged.refund_ids:
            await self._clear_pending(order_id, TransactionType.REFUND)
            return merged

        saved = await self._mark_processing(order_id, merged.refund_ids)
        logger.info("online_refunds_created", order_id=order_id, refund_ids=merged.refund_ids)
        if saved is not None:
            await self._publish(saved, financial_patches(saved))
        return merged

    async def _mark_processing(
        self,
        order_id: str,
        transaction_ids: list[str],
        *,
        confirmation_url: Optional[str] = None,
    ) -> Optional[Order]:
        async with self._uow_factory() as uow:
            order = await self._load_for_update(uow, order_id)
            tx = order.online_transaction
            if tx is None or tx.status != OnlineTransactionStatus.INIT:
                return None
            # 回调可能早于这里到达：已入账的交易号不再挂起
            outstanding = [t for t in transaction_ids if not order.financials.has_transaction(t)]
            if outstanding:
                updated = self._lifecycle.mark_processing(
                    order, outstanding, confirmation_url=confirmation_url
                )
            else:
                updated = self._lifecycle.clear(order)
            return await uow.orders.save(updated)

    async def _clear_pending(self, order_id: str, transaction_type: TransactionType) -> None:
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_update(order_id)
            tx = order.online_transaction if order else None
            if tx is None or tx.type != transaction_type or tx.status != OnlineTransactionStatus.INIT:
                return
            await uow.orders.save(self._lifecycle.clear(order))
        logger.info("online_transaction_cleared", order_id=order_id, transaction_type=transaction_type.value)

    # ---- webhooks ----

    async def handle_webhook(self, provider: str, request: WebhookRequest, *, deadline: Deadline) -> WebhookOutcome:
        """校验 → 规范化 → 入账；无法认证或解析的推送直接丢弃"""
        adapter = self._registry.get(provider)
        if not adapter.verify_webhook_authenticity(request):
            logger.warning("webhook_rejected_unauthenticated", provider=provider, client_host=request.client_host)
            return WebhookOutcome(accepted=False, reason="unauthenticated")

        try:
            payload = json.loads(request.body or b"{}")
        except ValueError:
            logger.warning("webhook_rejected_unparseable", provider=provider)
            return WebhookOutcome(accepted=False, reason="unparseable")
        if not isinstance(payload, dict):
            return WebhookOutcome(accepted=False, reason="unparseable")

        event = adapter.normalize_webhook(payload)
        if event is None:
            logger.info("webhook_ignored", provider=provider, webhook_event=payload.get("event"))
            return WebhookOutcome(accepted=False, reason="unrecognized")
        if not event.finished:
            return WebhookOutcome(
                accepted=True, reason="in_flight", order_id=event.order_id, transaction_id=event.transaction_id
            )

        missing = event.missing_fields()
        if missing or not event.order_id:
            await self._critical.record(
                CriticalEventCategory.WEBHOOK,
                "webhook_transaction_missing_fields",
                {"provider": provider, "missing": missing or ["order_id"], "event": event.model_dump(mode="json")},
            )
            return WebhookOutcome(accepted=False, reason="missing_fields", transaction_id=event.transaction_id)

        return await self._apply_webhook_event(event, deadline=deadline)

    async def _apply_webhook_event(self, event: CanonicalTransaction, *, deadline: Deadline) -> WebhookOutcome:
        async with self._uow_factory() as uow:
            order = await uow.orders.get(event.order_id)
        if order is None:
            await self._critical.record(
                CriticalEventCategory.WEBHOOK,
                "webhook_for_unknown_order",
                {"event": event.model_dump(mode="json")},
            )
            return WebhookOutcome(accepted=False, reason="unknown_order", transaction_id=event.transaction_id)
        if order.current_status == OrderStatus.DRAFT:
            await self._critical.record(
                CriticalEventCategory.ONLINE_TRANSACTION,
                "webhook_for_draft_order",
                {"order_id": order.id, "event": event.model_dump(mode="json")},
            )
            return WebhookOutcome(accepted=False, reason="draft_order", order_id=order.id)

        duplicate = order.financials.has_transaction(event.transaction_id)
        tx = to_ledger_transaction(event)
        try:
            result = await self._apply(order.id, tx, actor=SYSTEM_ACTOR, deadline=deadline)
        except AmountGuardViolationException as exc:
            await self._critical.record(
                CriticalEventCategory.FINANCIALS,
                "ledger_rejected_gateway_transaction",
                {"order_id": order.id, "error": exc.message, "event": event.model_dump(mode="json")},
            )
            return WebhookOutcome(accepted=False, reason="amount_guard", order_id=order.id)
        return WebhookOutcome(
            accepted=True,
            applied=result.applied,
            duplicate=duplicate,
            order_id=order.id,
            transaction_id=event.transaction_id,
        )

    # ---- helpers ----

    async def _load_for_update(self, uow: AbstractUnitOfWork, order_id: str) -> Order:
        order = await uow.orders.get_for_update(order_id)
        if order is None:
            raise OrderNotFoundException(order_id)
        return order

    async def _report_missing_customer(self, order: Order, delta: Decimal) -> None:
        await self._critical.record(
            CriticalEventCategory.CUSTOMER,
            "customer_not_found_for_total_spent",
            {"order_id": order.id, "customer_id": order.customer_id, "delta": str(delta)},
        )

    async def _publish(
        self,
        order: Order,
        patches: list[OrderPatch],
        new_event: Optional[FinancialEvent] = None,
    ) -> None:
        message = build_order_update(order, patches, new_event)
        try:
            await self._fanout.publish(message)
        except Exception as exc:
            # 通知失败不影响已提交的账本
            logger.error("order_update_publish_failed", order_id=order.id, error=str(exc))


def to_ledger_transaction(event: CanonicalTransaction) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_type=event.transaction_type,
        method=FinancialMethod.CARD_ONLINE,
        amount=event.amount if event.amount is not None else ZERO,
        provider=event.provider.value,
        transaction_id=event.transaction_id,
        original_payment_id=event.original_payment_id,
        mark_as_failed=event.mark_as_failed,
    )
