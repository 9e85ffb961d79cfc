from decimal import Decimal

import pytest

from application.services.order_updates import status_patches
from domain.order.entity import DeliveryMethod, FinancialState, OrderStatus
from domain.order.exceptions import (
    IllegalStatusTransitionException,
    OrderAmountBelowMinimumException,
    OrderNotActiveException,
    OrderNotFullyPaidException,
)
from domain.order.status_machine import OrderStatusMachine, StatusAction, steps_for
from tests.support import ADMIN, NOW, build_event, build_order


@pytest.fixture
def machine():
    return OrderStatusMachine(min_order_amount=Decimal("1000"))


def _walk(machine, order, times):
    for _ in range(times):
        order = machine.advance(order, StatusAction.NEXT, actor=ADMIN, now=NOW)
    return order


def test_steps_depend_on_delivery_method():
    pickup = [s.status for s in steps_for(DeliveryMethod.SELF_PICKUP)]
    courier = [s.status for s in steps_for(DeliveryMethod.COURIER)]

    assert pickup == [
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.PICKED_UP,
        OrderStatus.COMPLETED,
    ]
    assert courier == [
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.READY_FOR_SHIPMENT,
        OrderStatus.IN_TRANSIT,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
    ]


def test_next_walks_courier_flow_to_completion_when_paid(machine):
    order = build_order(total="10000", events=(build_event("10000"),))
    order = _walk(machine, order, 5)

    assert order.current_status == OrderStatus.COMPLETED
    assert [h.status for h in order.status_history][-1] == OrderStatus.COMPLETED
    assert all(h.actor == ADMIN for h in order.status_history)


def test_completion_requires_full_payment(machine):
    order = build_order(status=OrderStatus.DELIVERED, events=(build_event("9000"),))
    with pytest.raises(OrderNotFullyPaidException):
        machine.advance(order, StatusAction.NEXT, actor=ADMIN, now=NOW)


def test_next_cannot_skip_steps(machine):
    order = build_order(delivery=DeliveryMethod.SELF_PICKUP)
    with pytest.raises(IllegalStatusTransitionException):
        machine.advance(
            order,
            StatusAction.NEXT,
            actor=ADMIN,
            now=NOW,
            target_status=OrderStatus.COMPLETED,
        )


def test_rollback_returns_to_previous_step(machine):
    order = build_order(status=OrderStatus.IN_TRANSIT)
    moved = machine.advance(order, StatusAction.ROLLBACK, actor=ADMIN, now=NOW)

    assert moved.current_status == OrderStatus.READY_FOR_SHIPMENT
    assert moved.status_history[-1].is_rollback is True


def test_rollback_is_not_allowed_from_confirmed(machine):
    order = build_order(status=OrderStatus.CONFIRMED)
    with pytest.raises(IllegalStatusTransitionException):
        machine.advance(order, StatusAction.ROLLBACK, actor=ADMIN, now=NOW)


def test_rollback_target_must_be_adjacent(machine):
    order = build_order(status=OrderStatus.DELIVERED)
    with pytest.raises(IllegalStatusTransitionException):
        machine.advance(
            order,
            StatusAction.ROLLBACK,
            actor=ADMIN,
            now=NOW,
            target_status=OrderStatus.PROCESSING,
        )


def test_cancel_records_last_active_status_and_rederives_state(machine):
    order = build_order(status=OrderStatus.PROCESSING)
    cancelled = machine.advance(order, StatusAction.CANCEL, actor=ADMIN, now=NOW, reason="customer request")

    assert cancelled.current_status == OrderStatus.CANCELLED
    assert cancelled.status_history[-1].last_active_status == OrderStatus.PROCESSING
    assert cancelled.last_active_status == OrderStatus.PROCESSING
    assert cancelled.financials.state == FinancialState.VOIDED


def test_cancelled_order_reports_progress_from_its_cancel_entry(machine):
    cancelled = machine.advance(build_order(status=OrderStatus.DELIVERED), StatusAction.CANCEL, actor=ADMIN, now=NOW)

    assert cancelled.status_history[-1].last_active_status == OrderStatus.DELIVERED
    assert cancelled.last_active_status == OrderStatus.DELIVERED
    patches = {p.path: p.value for p in status_patches(cancelled)}
    assert patches["lastActiveStatus"] == "delivered"


def test_cancel_with_money_on_order_is_refund_pending(machine):
    order = build_order(status=OrderStatus.PROCESSING, events=(build_event("2500"),))
    cancelled = machine.advance(order, StatusAction.CANCEL, actor=ADMIN, now=NOW)
    assert cancelled.financials.state == FinancialState.REFUND_PENDING


@pytest.mark.parametrize("status", [OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.DRAFT])
def test_inactive_orders_cannot_move(machine, status):
    order = build_order(status=status)
    with pytest.raises(OrderNotActiveException):
        machine.advance(order, StatusAction.CANCEL, actor=ADMIN, now=NOW)


def test_minimum_order_amount_blocks_next_and_rollback_but_not_cancel(machine):
    order = build_order(total="500", status=OrderStatus.PROCESSING)

    with pytest.raises(OrderAmountBelowMinimumException):
        machine.advance(order, StatusAction.NEXT, actor=ADMIN, now=NOW)
    with pytest.raises(OrderAmountBelowMinimumException):
        machine.advance(order, StatusAction.ROLLBACK, actor=ADMIN, now=NOW)

    cancelled = machine.advance(order, StatusAction.CANCEL, actor=ADMIN, now=NOW)
    assert cancelled.current_status == OrderStatus.CANCELLED


def test_confirm_only_from_draft(machine):
    draft = build_order(status=OrderStatus.DRAFT)
    confirmed = machine.confirm(draft, actor=ADMIN, now=NOW)
    assert confirmed.current_status == OrderStatus.CONFIRMED

    with pytest.raises(IllegalStatusTransitionException):
        machine.confirm(confirmed, actor=ADMIN, now=NOW)


def test_confirm_requires_minimum_amount(machine):
    with pytest.raises(OrderAmountBelowMinimumException):
        machine.confirm(build_order(total="999", status=OrderStatus.DRAFT), actor=ADMIN, now=NOW)
