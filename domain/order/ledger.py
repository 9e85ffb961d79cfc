"""
财务账本归约器（纯函数）

输入账本与订单状态，输出 {total_paid, total_refunded, state}。
无副作用：对相同输入任意次调用都得到相同结果，可随时从空累加器重放整段历史。
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Iterable

from domain.common.money import (
    CURRENCY_EPS,
    ZERO,
    is_equal_currency,
    is_less_currency,
)
from domain.order.entity import (
    FinancialEvent,
    FinancialState,
    Order,
    OrderStatus,
    TransactionType,
)


@dataclass(frozen=True)
class LedgerSnapshot:
    total_paid: Decimal
    total_refunded: Decimal
    state: FinancialState

    @property
    def net_paid(self) -> Decimal:
        return self.total_paid - self.total_refunded


def derive_state(
    net_paid: Decimal,
    current_status: OrderStatus,
    total_amount: Decimal,
    *,
    has_payments: bool,
    eps: Decimal = CURRENCY_EPS,
) -> FinancialState:
    if current_status == OrderStatus.CANCELLED:
        if is_equal_currency(net_paid, ZERO, eps):
            return FinancialState.REFUNDED if has_payments else FinancialState.VOIDED
        if net_paid < ZERO:
            return FinancialState.OVER_REFUNDED
        return FinancialState.REFUND_PENDING

    if is_equal_currency(net_paid, ZERO, eps):
        return FinancialState.UNPAID
    if net_paid < ZERO:
        return FinancialState.NEGATIVE_BALANCE
    if is_equal_currency(net_paid, total_amount, eps):
        return FinancialState.PAID
    if is_less_currency(net_paid, total_amount, eps):
        return FinancialState.PARTIALLY_PAID
    return FinancialState.OVERPAID


def compute_financials(
    event_history: Iterable[FinancialEvent],
    current_status: OrderStatus,
    total_amount: Decimal,
    *,
    eps: Decimal = CURRENCY_EPS,
) -> LedgerSnapshot:
    total_paid = ZERO
    total_refunded = ZERO
    has_payments = False
    for event in event_history:
        if event.voided:
            continue
        if event.type == TransactionType.PAYMENT:
            total_paid += event.amount
            has_payments = True
        else:
            total_refunded += event.amount

    state = derive_state(
        total_paid - total_refunded,
        current_status,
        total_amount,
        has_payments=has_payments,
        eps=eps,
    )
    return LedgerSnapshot(total_paid=total_paid, total_refunded=total_refunded, state=state)


def recompute(order: Order, *, eps: Decimal = CURRENCY_EPS) -> Order:
    """重新归约账本并返回带新汇总的订单"""
    snapshot = compute_financials(
        order.financials.event_history,
        order.current_status,
        order.total_amount,
        eps=eps,
    )
    return order.with_financials(
        replace(
            order.financials,
            state=snapshot.state,
            total_paid=snapshot.total_paid,
            total_refunded=snapshot.total_refunded,
        )
    )
