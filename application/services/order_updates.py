"""
Fanout patch builders and the customer total-spent hand-off.

Patches are minimal dot-path updates; the full order is never dumped.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from application.dtos.orders import (
    FinancialEventDTO,
    OnlineTransactionDTO,
    StatusHistoryDTO,
)
from application.ports.fanout import (
    OrderPatch,
    OrderUpdate,
    OrderUpdateMessage,
    UpdatedOrderData,
)
from domain.common.money import ZERO, to_money
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import FinancialEvent, Order, OrderStatus


def financial_patches(order: Order) -> list[OrderPatch]:
    f = order.financials
    online = OnlineTransactionDTO.from_entity(f.current_online_transaction)
    return [
        OrderPatch(path="financials.state", value=f.state.value),
        OrderPatch(path="financials.totalPaid", value=float(f.total_paid)),
        OrderPatch(path="financials.totalRefunded", value=float(f.total_refunded)),
        OrderPatch(
            path="financials.currentOnlineTransaction",
            value=online.model_dump(mode="json", by_alias=True) if online else None,
        ),
    ]


def event_entry(event: Optional[FinancialEvent]) -> Optional[dict]:
    if event is None:
        return None
    return FinancialEventDTO.from_entity(event).model_dump(mode="json", by_alias=True)


def status_patches(order: Order) -> list[OrderPatch]:
    patches = [
        OrderPatch(path="currentStatus", value=order.current_status.value),
        OrderPatch(path="financials.state", value=order.financials.state.value),
    ]
    if order.status_history:
        last = StatusHistoryDTO.from_entity(order.status_history[-1])
        patches.append(OrderPatch(path="statusHistory", value=last.model_dump(mode="json", by_alias=True)))
    if order.current_status == OrderStatus.CANCELLED:
        last_active = order.last_active_status
        patches.append(
            OrderPatch(path="lastActiveStatus", value=last_active.value if last_active else None)
        )
    return patches


def voided_event_patch(order: Order, event: FinancialEvent) -> OrderPatch:
    index = next(
        i for i, e in enumerate(order.financials.event_history) if e.id == event.id
    )
    return OrderPatch(path=f"financials.eventHistory.{index}", value=event_entry(event))


def build_order_update(
    order: Order,
    patches: list[OrderPatch],
    new_event: Optional[FinancialEvent] = None,
) -> OrderUpdateMessage:
    return OrderUpdateMessage(
        order_update=OrderUpdate(
            order_id=order.id,
            updated_order_data=UpdatedOrderData(
                order_patches=patches,
                new_financials_event_entry=event_entry(new_event),
            ),
        )
    )


async def forward_total_spent(uow: AbstractUnitOfWork, order: Order, delta: Decimal) -> bool:
    """Forward a net-paid delta to the customer aggregate.

    Returns False when the customer record is missing so the caller can
    raise a critical event once its transaction has committed.
    """
    if not order.customer_id:
        return True
    amount = to_money(delta)
    if amount == ZERO:
        return True
    return await uow.customers.add_total_spent(order.customer_id, amount)
