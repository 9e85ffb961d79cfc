"""
账本写入 - 幂等追加、金额守卫与作废

所有方法都是纯变换：接收已加载的订单，返回新订单与结果描述，
不做任何 I/O。事务边界与客户累计消费转发由应用层负责。
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.common.money import CURRENCY_EPS, ZERO, is_greater_currency, to_money
from domain.order.entity import (
    BankProvider,
    CASH_ON_RECEIPT_STATUSES,
    Actor,
    FinancialEvent,
    FinancialMethod,
    OnlineProvider,
    Order,
    OrderStatus,
    OVERPAYMENT_ALLOWED_METHODS,
    PAYMENT_METHODS,
    REFUND_METHODS,
    TRANSACTION_ID_REQUIRED_METHODS,
    TransactionType,
    new_event_id,
)
from domain.order.exceptions import (
    AmountGuardViolationException,
    FinancialEventAlreadyVoidedException,
    FinancialEventNotFoundException,
    FinancialEventNotVoidableException,
)
from domain.order.ledger import recompute


@dataclass(frozen=True)
class LedgerTransaction:
    """一次待入账的资金流转"""

    transaction_type: TransactionType
    method: FinancialMethod
    amount: Decimal
    provider: Optional[str] = None
    transaction_id: Optional[str] = None
    original_payment_id: Optional[str] = None
    external_reference: Optional[str] = None
    mark_as_failed: bool = False


@dataclass(frozen=True)
class ApplyResult:
    order: Order
    net_paid: Decimal
    net_paid_delta: Decimal = ZERO
    event: Optional[FinancialEvent] = None
    applied: bool = False


@dataclass(frozen=True)
class VoidResult:
    order: Order
    event: FinancialEvent
    net_paid_delta: Decimal


@dataclass(frozen=True)
class CardRefundStats:
    """可原路退回的在线卡支付"""

    payments: tuple[FinancialEvent, ...] = ()
    providers: tuple[OnlineProvider, ...] = ()
    total: Decimal = ZERO
    by_provider: dict = field(default_factory=dict)


class TransactionApplier:
    def __init__(self, *, currency_eps: Decimal = CURRENCY_EPS) -> None:
        self.currency_eps = currency_eps

    def apply_order_financials(
        self,
        order: Order,
        tx: LedgerTransaction,
        *,
        actor: Actor,
        now: datetime,
    ) -> ApplyResult:
        net_paid = order.net_paid

        # 已记录的幂等键：成功的空操作
        if order.financials.has_transaction(tx.transaction_id):
            return ApplyResult(order=order, net_paid=net_paid)

        # 网关明确失败：不入账，仅由在线交易生命周期清理
        if tx.mark_as_failed:
            return ApplyResult(order=order, net_paid=net_paid)

        self._validate(order, tx)
        amount = to_money(tx.amount)
        self._guard_amount(order, tx, amount)

        event = FinancialEvent(
            id=new_event_id(),
            type=tx.transaction_type,
            method=tx.method,
            amount=amount,
            actor=actor,
            created_at=now,
            provider=tx.provider,
            transaction_id=tx.transaction_id,
            original_payment_id=tx.original_payment_id,
            external_reference=tx.external_reference,
        )
        appended = replace(
            order,
            financials=replace(
                order.financials,
                event_history=order.financials.event_history + (event,),
            ),
            updated_at=now,
        )
        updated = recompute(appended, eps=self.currency_eps)
        return ApplyResult(
            order=updated,
            net_paid=updated.net_paid,
            net_paid_delta=updated.net_paid - net_paid,
            event=event,
            applied=True,
        )

    def void_event(
        self,
        order: Order,
        event_id: str,
        *,
        note: Optional[str],
        actor: Actor,
        now: datetime,
    ) -> VoidResult:
        target = order.financials.find_event(event_id)
        if target is None:
            raise FinancialEventNotFoundException(event_id)
        if target.voided:
            raise FinancialEventAlreadyVoidedException(event_id)
        if target.method == FinancialMethod.CARD_ONLINE:
            # 网关记录的事实只能通过网关退款冲正
            raise FinancialEventNotVoidableException(event_id, "gateway-recorded event")

        voided = target.void(note=note, actor=actor, now=now)
        history = tuple(voided if e.id == event_id else e for e in order.financials.event_history)
        before = order.net_paid
        updated = recompute(
            replace(
                order,
                financials=replace(order.financials, event_history=history),
                updated_at=now,
            ),
            eps=self.currency_eps,
        )
        return VoidResult(order=updated, event=voided, net_paid_delta=updated.net_paid - before)

    def card_refund_stats(self, order: Order) -> CardRefundStats:
        history = order.financials.event_history
        refunded_ids = {
            e.original_payment_id
            for e in history
            if e.type == TransactionType.REFUND and not e.voided and e.original_payment_id
        }
        payments = tuple(
            e
            for e in history
            if e.type == TransactionType.PAYMENT
            and e.method == FinancialMethod.CARD_ONLINE
            and not e.voided
            and e.transaction_id
            and e.transaction_id not in refunded_ids
        )
        by_provider: dict[OnlineProvider, list[FinancialEvent]] = {}
        for p in payments:
            by_provider.setdefault(OnlineProvider(p.provider), []).append(p)
        return CardRefundStats(
            payments=payments,
            providers=tuple(by_provider),
            total=sum((p.amount for p in payments), ZERO),
            by_provider={k: tuple(v) for k, v in by_provider.items()},
        )

    def _validate(self, order: Order, tx: LedgerTransaction) -> None:
        if tx.amount is None or tx.amount <= 0:
            raise DomainValidationException("Amount must be positive", field="amount")

        allowed = PAYMENT_METHODS if tx.transaction_type == TransactionType.PAYMENT else REFUND_METHODS
        if tx.method not in allowed:
            raise DomainValidationException(
                f"Method {tx.method.value} is not allowed for {tx.transaction_type.value}",
                field="method",
            )
        if tx.method in TRANSACTION_ID_REQUIRED_METHODS and not tx.transaction_id:
            raise DomainValidationException(
                f"Method {tx.method.value} requires a transaction id",
                field="transaction_id",
            )
        if tx.method == FinancialMethod.BANK_TRANSFER:
            self._require_provider(tx.provider, BankProvider)
        elif tx.method == FinancialMethod.CARD_ONLINE:
            self._require_provider(tx.provider, OnlineProvider)
        elif tx.provider is not None:
            raise DomainValidationException(
                f"Method {tx.method.value} does not take a provider", field="provider"
            )

        if (
            tx.method == FinancialMethod.CASH_ON_RECEIPT
            and order.current_status not in CASH_ON_RECEIPT_STATUSES
        ):
            raise DomainValidationException(
                f"Cash on receipt is not allowed in status {order.current_status.value}",
                field="method",
            )

    @staticmethod
    def _require_provider(provider: Optional[str], enum_cls) -> None:
        valid = {p.value for p in enum_cls}
        if provider not in valid:
            raise DomainValidationException(
                f"Unknown provider: {provider}", field="provider", details={"allowed": sorted(valid)}
            )

    def _guard_amount(self, order: Order, tx: LedgerTransaction, amount: Decimal) -> None:
        net_paid = order.net_paid
        if tx.transaction_type == TransactionType.REFUND:
            if is_greater_currency(amount, net_paid, self.currency_eps):
                raise AmountGuardViolationException(
                    "Refund exceeds the net paid amount",
                    amount=amount,
                    net_paid=net_paid,
                    limit=net_paid,
                )
            return

        if tx.method in OVERPAYMENT_ALLOWED_METHODS:
            return
        ceiling = ZERO if order.current_status == OrderStatus.CANCELLED else order.total_amount
        if is_greater_currency(net_paid + amount, ceiling, self.currency_eps):
            raise AmountGuardViolationException(
                "Payment would exceed the amount due",
                amount=amount,
                net_paid=net_paid,
                limit=ceiling,
            )
