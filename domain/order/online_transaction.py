"""
在线交易生命周期

none → init（请求已发往网关） → processing（已拿到网关交易号） → 清除
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from domain.order.entity import (
    OnlineProvider,
    OnlineTransaction,
    OnlineTransactionStatus,
    Order,
    TransactionType,
)
from domain.order.exceptions import OnlineTransactionInProgressException


class OnlineTransactionLifecycle:

    def begin(
        self,
        order: Order,
        transaction_type: TransactionType,
        providers: Iterable[OnlineProvider],
        *,
        now: datetime,
        amount: Optional[Decimal] = None,
    ) -> Order:
        if order.online_transaction is not None:
            raise OnlineTransactionInProgressException(order.id)
        tx = OnlineTransaction(
            type=transaction_type,
            status=OnlineTransactionStatus.INIT,
            providers=tuple(dict.fromkeys(providers)),
            started_at=now,
            amount=amount,
        )
        return order.with_online_transaction(tx)

    def mark_processing(
        self,
        order: Order,
        transaction_ids: Iterable[str],
        *,
        providers: Optional[Iterable[OnlineProvider]] = None,
        confirmation_url: Optional[str] = None,
    ) -> Order:
        current = order.online_transaction
        if current is None:
            return order
        tx = replace(
            current,
            status=OnlineTransactionStatus.PROCESSING,
            transaction_ids=tuple(dict.fromkeys(transaction_ids)),
            providers=tuple(dict.fromkeys(providers)) if providers else current.providers,
            confirmation_url=confirmation_url or current.confirmation_url,
        )
        return order.with_online_transaction(tx)

    def resolve(self, order: Order, transaction_id: str) -> Order:
        """移除已解决的交易号；集合清空即清除在途交易"""
        current = order.online_transaction
        if current is None or transaction_id not in current.transaction_ids:
            return order
        remaining = tuple(t for t in current.transaction_ids if t != transaction_id)
        if not remaining:
            return self.clear(order)
        return order.with_online_transaction(replace(current, transaction_ids=remaining))

    def clear(self, order: Order) -> Order:
        if order.online_transaction is None:
            return order
        return order.with_online_transaction(None)

    @staticmethod
    def is_stuck(order: Order, threshold: datetime) -> bool:
        tx = order.online_transaction
        return (
            tx is not None
            and tx.status == OnlineTransactionStatus.INIT
            and tx.started_at <= threshold
        )
