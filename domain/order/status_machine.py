"""
订单状态机 - 按配送方式配置的有序步骤

规则：
1. NEXT 只能前进到当前步骤的下一步；完成要求已全额付款
2. ROLLBACK 仅允许回到紧邻的上一步，且当前步骤需允许回退
3. CANCEL 可从任意活跃状态发起，并记录 last_active_status
4. 除取消外的迁移都要求订单金额不低于最低起订额
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.money import CURRENCY_EPS, is_less_currency
from domain.order.entity import (
    ACTIVE_STATUSES,
    Actor,
    DeliveryMethod,
    Order,
    OrderStatus,
    StatusHistoryEntry,
)
from domain.order.exceptions import (
    IllegalStatusTransitionException,
    OrderAmountBelowMinimumException,
    OrderNotActiveException,
    OrderNotFullyPaidException,
)
from domain.order.ledger import recompute


class StatusAction(str, Enum):
    NEXT = "next"
    ROLLBACK = "rollback"
    CANCEL = "cancel"


_ALL_METHODS = frozenset(DeliveryMethod)
_SHIPPING_METHODS = frozenset({DeliveryMethod.COURIER, DeliveryMethod.TRANSPORT_COMPANY})


@dataclass(frozen=True)
class OrderStep:
    status: OrderStatus
    order: int
    rollback_allowed: bool
    delivery_methods: frozenset


ORDER_STEPS: tuple[OrderStep, ...] = (
    OrderStep(OrderStatus.CONFIRMED, 0, False, _ALL_METHODS),
    OrderStep(OrderStatus.PROCESSING, 1, True, _ALL_METHODS),
    OrderStep(OrderStatus.READY_FOR_PICKUP, 2, True, frozenset({DeliveryMethod.SELF_PICKUP})),
    OrderStep(OrderStatus.READY_FOR_SHIPMENT, 3, True, _SHIPPING_METHODS),
    OrderStep(OrderStatus.PICKED_UP, 4, True, frozenset({DeliveryMethod.SELF_PICKUP})),
    OrderStep(OrderStatus.IN_TRANSIT, 5, True, _SHIPPING_METHODS),
    OrderStep(OrderStatus.DELIVERED, 6, True, _SHIPPING_METHODS),
    OrderStep(OrderStatus.COMPLETED, 7, False, _ALL_METHODS),
)


def steps_for(delivery_method: DeliveryMethod) -> list[OrderStep]:
    """某配送方式的步骤序列（按 order 排序，不含取消）"""
    return sorted(
        (s for s in ORDER_STEPS if delivery_method in s.delivery_methods),
        key=lambda s: s.order,
    )


class OrderStatusMachine:
    """状态迁移校验器，返回带新历史条目的订单副本"""

    def __init__(
        self,
        *,
        min_order_amount: Decimal = Decimal("1000"),
        currency_eps: Decimal = CURRENCY_EPS,
    ) -> None:
        self.min_order_amount = min_order_amount
        self.currency_eps = currency_eps

    def _locate(self, order: Order) -> tuple[list[OrderStep], int]:
        steps = steps_for(order.delivery_method)
        for idx, step in enumerate(steps):
            if step.status == order.current_status:
                return steps, idx
        raise IllegalStatusTransitionException(
            order.current_status.value,
            None,
            f"status is not a step of {order.delivery_method.value} delivery",
        )

    def next_status(self, order: Order) -> Optional[OrderStatus]:
        steps, idx = self._locate(order)
        if idx + 1 < len(steps):
            return steps[idx + 1].status
        return None

    def previous_status(self, order: Order) -> Optional[OrderStatus]:
        steps, idx = self._locate(order)
        return steps[idx - 1].status if idx > 0 else None

    def confirm(self, order: Order, *, actor: Actor, now: datetime) -> Order:
        """结账确认：draft → confirmed"""
        if order.current_status != OrderStatus.DRAFT:
            raise IllegalStatusTransitionException(
                order.current_status.value,
                OrderStatus.CONFIRMED.value,
                "only draft orders can be confirmed",
            )
        self._require_minimum(order)
        return self._transition(order, OrderStatus.CONFIRMED, actor=actor, now=now)

    def advance(
        self,
        order: Order,
        action: StatusAction,
        *,
        actor: Actor,
        now: datetime,
        target_status: Optional[OrderStatus] = None,
        reason: Optional[str] = None,
    ) -> Order:
        if order.current_status not in ACTIVE_STATUSES:
            raise OrderNotActiveException(order.id, order.current_status.value)

        if action == StatusAction.CANCEL:
            if target_status is not None and target_status != OrderStatus.CANCELLED:
                raise IllegalStatusTransitionException(
                    order.current_status.value,
                    target_status.value,
                    "cancel can only target cancelled",
                )
            return self._transition(
                order,
                OrderStatus.CANCELLED,
                actor=actor,
                now=now,
                last_active_status=order.current_status,
                reason=reason,
            )

        self._require_minimum(order)
        steps, idx = self._locate(order)
        requested = target_status.value if target_status else None

        if action == StatusAction.NEXT:
            if idx + 1 >= len(steps):
                raise IllegalStatusTransitionException(
                    order.current_status.value, requested, "no next step"
                )
            new_status = steps[idx + 1].status
            if target_status is not None and target_status != new_status:
                raise IllegalStatusTransitionException(
                    order.current_status.value,
                    requested,
                    f"next step is {new_status.value}",
                )
            if new_status == OrderStatus.COMPLETED and is_less_currency(
                order.net_paid, order.total_amount, self.currency_eps
            ):
                raise OrderNotFullyPaidException(order.id, order.net_paid, order.total_amount)
            return self._transition(order, new_status, actor=actor, now=now, reason=reason)

        if action == StatusAction.ROLLBACK:
            if not steps[idx].rollback_allowed or idx == 0:
                raise IllegalStatusTransitionException(
                    order.current_status.value, requested, "rollback is not allowed from this step"
                )
            new_status = steps[idx - 1].status
            if target_status is not None and target_status != new_status:
                raise IllegalStatusTransitionException(
                    order.current_status.value,
                    requested,
                    f"rollback can only return to {new_status.value}",
                )
            return self._transition(
                order, new_status, actor=actor, now=now, is_rollback=True, reason=reason
            )

        raise IllegalStatusTransitionException(
            order.current_status.value, requested, f"unknown action {action}"
        )

    def _require_minimum(self, order: Order) -> None:
        if order.total_amount < self.min_order_amount:
            raise OrderAmountBelowMinimumException(
                order.id, order.total_amount, self.min_order_amount
            )

    def _transition(
        self,
        order: Order,
        new_status: OrderStatus,
        *,
        actor: Actor,
        now: datetime,
        last_active_status: Optional[OrderStatus] = None,
        is_rollback: bool = False,
        reason: Optional[str] = None,
    ) -> Order:
        if new_status == order.current_status:
            raise IllegalStatusTransitionException(
                order.current_status.value, new_status.value, "status is unchanged"
            )
        entry = StatusHistoryEntry(
            status=new_status,
            changed_at=now,
            actor=actor,
            last_active_status=last_active_status,
            is_rollback=is_rollback,
            reason=reason,
        )
        moved = replace(
            order,
            current_status=new_status,
            status_history=order.status_history + (entry,),
            updated_at=now,
        )
        # 取消会切换财务状态的推导分支
        return recompute(moved, eps=self.currency_eps)
