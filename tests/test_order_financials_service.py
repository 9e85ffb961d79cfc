import json
from decimal import Decimal

import pytest

from application.dtos.orders import (
    ChangeStatusCommand,
    CreateOnlinePaymentCommand,
    RecordFinancialEventCommand,
)
from application.dtos.payments import (
    PaymentCreation,
    RefundBatchResult,
    RefundFailure,
    RefundTask,
    WebhookRequest,
)
from application.ports.payment_provider import OnlinePaymentCreationFailedException
from core.deadline import Deadline
from domain.common.exceptions import DomainValidationException, RequestDeadlineExceededException
from domain.order.entity import (
    FinancialMethod,
    FinancialState,
    OnlineTransactionStatus,
    OrderStatus,
    TransactionType,
)
from domain.order.exceptions import (
    AmountGuardViolationException,
    NothingToRefundException,
    OnlineTransactionInProgressException,
    OrderAlreadyPaidException,
    OrderNotActiveException,
    OrderNotFoundException,
)
from domain.order.status_machine import StatusAction
from tests.support import ADMIN, build_event, build_order, card_payment, pending_tx


def _cash(amount: str, tx_type=TransactionType.PAYMENT) -> RecordFinancialEventCommand:
    return RecordFinancialEventCommand(transaction_type=tx_type, method=FinancialMethod.CASH, amount=Decimal(amount))


def _patches(wire: dict) -> dict:
    data = wire["orderUpdate"]["updatedOrderData"]
    return {p["path"]: p["value"] for p in data["orderPatches"]}


@pytest.fixture
def deadline():
    return Deadline.unbounded()


# ---- ledger writes ----

@pytest.mark.asyncio
async def test_record_event_persists_and_publishes(service, store, fanout, deadline):
    store.put(build_order(total="10000"))

    dto = await service.record_event("order-1", _cash("4000"), actor=ADMIN, deadline=deadline)

    assert dto.financials.state == FinancialState.PARTIALLY_PAID
    assert dto.financials.net_paid == Decimal("4000")
    saved = store.orders["order-1"]
    assert saved.version == 1
    assert saved.financials.event_history[0].actor == ADMIN

    [wire] = fanout.for_order("order-1")
    patches = _patches(wire)
    assert patches["financials.state"] == "partially_paid"
    assert patches["financials.totalPaid"] == 4000.0
    entry = wire["orderUpdate"]["updatedOrderData"]["newFinancialsEventEntry"]
    assert entry["method"] == "cash"
    assert entry["actor"]["name"] == "alice"


@pytest.mark.asyncio
async def test_duplicate_transaction_id_is_a_silent_noop(service, store, fanout, deadline):
    store.put(build_order(total="10000"))
    cmd = RecordFinancialEventCommand(
        transaction_type=TransactionType.PAYMENT,
        method=FinancialMethod.BANK_TRANSFER,
        amount=Decimal("2500"),
        provider="severe_bank",
        transaction_id="bt-77",
    )

    await service.record_event("order-1", cmd, actor=ADMIN, deadline=deadline)
    dto = await service.record_event("order-1", cmd, actor=ADMIN, deadline=deadline)

    assert len(dto.financials.event_history) == 1
    assert store.orders["order-1"].net_paid == Decimal("2500")
    assert len(fanout.messages) == 1


@pytest.mark.asyncio
async def test_card_online_cannot_be_recorded_by_hand(service, store, deadline):
    store.put(build_order())
    cmd = RecordFinancialEventCommand(
        transaction_type=TransactionType.PAYMENT,
        method=FinancialMethod.CARD_ONLINE,
        amount=Decimal("100"),
        provider="yookassa",
        transaction_id="tx",
    )
    with pytest.raises(DomainValidationException):
        await service.record_event("order-1", cmd, actor=ADMIN, deadline=deadline)


@pytest.mark.asyncio
async def test_draft_orders_take_no_manual_events(service, store, deadline):
    store.put(build_order(status=OrderStatus.DRAFT))
    with pytest.raises(OrderNotActiveException):
        await service.record_event("order-1", _cash("100"), actor=ADMIN, deadline=deadline)


@pytest.mark.asyncio
async def test_unknown_order(service, deadline):
    with pytest.raises(OrderNotFoundException):
        await service.record_event("nope", _cash("100"), actor=ADMIN, deadline=deadline)
    with pytest.raises(OrderNotFoundException):
        await service.get_order("nope")


@pytest.mark.asyncio
async def test_guard_violation_leaves_order_untouched(service, store, fanout, deadline):
    store.put(build_order(total="1000"))
    with pytest.raises(AmountGuardViolationException):
        await service.record_event("order-1", _cash("600", TransactionType.REFUND), actor=ADMIN, deadline=deadline)

    assert store.orders["order-1"].version == 0
    assert fanout.messages == []


@pytest.mark.asyncio
async def test_expired_deadline_rolls_back(service, store, fanout):
    store.put(build_order(total="10000"))
    expired = Deadline(0.0, monotonic=lambda: 1.0)

    with pytest.raises(RequestDeadlineExceededException):
        await service.record_event("order-1", _cash("100"), actor=ADMIN, deadline=expired)

    assert store.orders["order-1"].financials.event_history == ()
    assert fanout.messages == []


@pytest.mark.asyncio
async def test_fanout_failure_does_not_undo_the_ledger(service, store, fanout, deadline):
    store.put(build_order(total="10000"))
    fanout.fail = True

    dto = await service.record_event("order-1", _cash("100"), actor=ADMIN, deadline=deadline)

    assert dto.financials.net_paid == Decimal("100")
    assert store.orders["order-1"].net_paid == Decimal("100")


@pytest.mark.asyncio
async def test_void_event_publishes_the_voided_entry(service, store, fanout, deadline):
    cash = build_event("400")
    store.put(build_order(total="1000", events=(cash,)))

    dto = await service.void_event("order-1", cash.id, note="typo", actor=ADMIN, deadline=deadline)

    assert dto.financials.state == FinancialState.UNPAID
    assert dto.financials.event_history[0].voided is True
    patches = _patches(fanout.for_order("order-1")[0])
    assert patches["financials.eventHistory.0"]["voided"] is True


# ---- status ----

@pytest.mark.asyncio
async def test_completion_forwards_net_paid_to_customer(service, store, deadline):
    store.put(build_order(status=OrderStatus.DELIVERED, events=(build_event("10000"),)))

    dto = await service.change_status(
        "order-1", ChangeStatusCommand(action=StatusAction.NEXT), actor=ADMIN, deadline=deadline
    )

    assert dto.current_status == OrderStatus.COMPLETED
    assert store.customers["customer-1"] == Decimal("10000")


@pytest.mark.asyncio
async def test_ledger_change_on_completed_order_forwards_delta(service, store, deadline):
    store.put(build_order(status=OrderStatus.COMPLETED, events=(build_event("10000"),)))

    await service.record_event("order-1", _cash("1000", TransactionType.REFUND), actor=ADMIN, deadline=deadline)

    assert store.customers["customer-1"] == Decimal("-1000")


@pytest.mark.asyncio
async def test_missing_customer_raises_critical_event(service, store, deadline):
    store.put(build_order(status=OrderStatus.DELIVERED, events=(build_event("10000"),), customer_id="ghost"))

    dto = await service.change_status(
        "order-1", ChangeStatusCommand(action=StatusAction.NEXT), actor=ADMIN, deadline=deadline
    )

    assert dto.current_status == OrderStatus.COMPLETED
    [event] = store.critical_events
    assert event.reason == "customer_not_found_for_total_spent"
    assert event.data["customer_id"] == "ghost"


@pytest.mark.asyncio
async def test_confirm_and_cancel(service, store, fanout, deadline):
    store.put(build_order(status=OrderStatus.DRAFT))

    await service.confirm_order("order-1", actor=ADMIN, deadline=deadline)
    dto = await service.change_status(
        "order-1",
        ChangeStatusCommand(action=StatusAction.CANCEL, reason="out of stock"),
        actor=ADMIN,
        deadline=deadline,
    )

    assert dto.current_status == OrderStatus.CANCELLED
    assert dto.last_active_status == OrderStatus.CONFIRMED
    assert dto.financials.state == FinancialState.VOIDED
    patches = _patches(fanout.messages[-1].to_wire())
    assert patches["currentStatus"] == "cancelled"
    assert patches["lastActiveStatus"] == "confirmed"


# ---- online payments ----

@pytest.mark.asyncio
async def test_create_online_payment_moves_to_processing(service, store, adapter, deadline):
    store.put(build_order(total="10000"))

    result = await service.create_online_payment(
        "order-1", CreateOnlinePaymentCommand(amount=Decimal("10000")), deadline=deadline
    )

    assert result.payment_id == "pay-1"
    assert result.confirmation_url == "https://pay.example/confirm"
    assert adapter.created[0].order_id == "order-1"
    assert adapter.created[0].amount == Decimal("10000")
    tx = store.orders["order-1"].online_transaction
    assert tx.status == OnlineTransactionStatus.PROCESSING
    assert tx.transaction_ids == ("pay-1",)
    assert tx.confirmation_url == "https://pay.example/confirm"


@pytest.mark.asyncio
async def test_provider_rejection_clears_pending_transaction(service, store, adapter, deadline):
    store.put(build_order(total="10000"))
    adapter.creation = PaymentCreation(error="invalid_card")

    with pytest.raises(OnlinePaymentCreationFailedException):
        await service.create_online_payment(
            "order-1", CreateOnlinePaymentCommand(amount=Decimal("500")), deadline=deadline
        )

    assert store.orders["order-1"].online_transaction is None


@pytest.mark.asyncio
async def test_transport_failure_clears_pending_transaction(service, store, adapter, deadline):
    store.put(build_order(total="10000"))
    adapter.create_error = ConnectionError("gateway unreachable")

    with pytest.raises(ConnectionError):
        await service.create_online_payment(
            "order-1", CreateOnlinePaymentCommand(amount=Decimal("500")), deadline=deadline
        )

    assert store.orders["order-1"].online_transaction is None


@pytest.mark.asyncio
async def test_online_payment_preconditions(service, store, deadline):
    store.put(build_order("paid", total="1000", events=(build_event("1000"),)))
    store.put(build_order("busy", total="10000", online_tx=pending_tx("pay-0")))
    store.put(build_order("small", total="10000", events=(build_event("9500"),)))
    store.put(build_order("draft", status=OrderStatus.DRAFT))

    with pytest.raises(OrderAlreadyPaidException):
        await service.create_online_payment("paid", CreateOnlinePaymentCommand(amount=Decimal("1")), deadline=deadline)
    with pytest.raises(OnlineTransactionInProgressException):
        await service.create_online_payment("busy", CreateOnlinePaymentCommand(amount=Decimal("1")), deadline=deadline)
    with pytest.raises(AmountGuardViolationException):
        await service.create_online_payment("small", CreateOnlinePaymentCommand(amount=Decimal("600")), deadline=deadline)
    with pytest.raises(OrderNotActiveException):
        await service.create_online_payment("draft", CreateOnlinePaymentCommand(amount=Decimal("1")), deadline=deadline)


@pytest.mark.asyncio
async def test_webhook_before_gateway_response_clears_transaction(service, store, adapter, deadline):
    """The gateway may notify before create_payment returns."""
    store.put(build_order(total="10000"))

    async def early_webhook(params):
        body = json.dumps({
            "transaction": {
                "transaction_type": "payment",
                "transaction_id": "pay-1",
                "amount": "10000",
                "finished": True,
                "order_id": params.order_id,
            }
        }).encode()
        await service.handle_webhook("yookassa", WebhookRequest(body=body), deadline=deadline)

    adapter.on_create = early_webhook

    await service.create_online_payment(
        "order-1", CreateOnlinePaymentCommand(amount=Decimal("10000")), deadline=deadline
    )

    order = store.orders["order-1"]
    assert order.online_transaction is None
    assert order.financials.state == FinancialState.PAID
    assert len(order.financials.event_history) == 1


# ---- online refunds ----

@pytest.mark.asyncio
async def test_online_refunds_cover_every_open_card_payment(service, store, adapter, deadline):
    store.put(build_order(
        status=OrderStatus.CANCELLED,
        events=(card_payment("3000", "pay-a"), card_payment("2000", "pay-b"), build_event("500")),
    ))

    result = await service.create_online_refunds("order-1", deadline=deadline)

    assert sorted(result.refund_ids) == ["refund-pay-a", "refund-pay-b"]
    tasks, params = adapter.refund_calls[0]
    assert {t.payment_id for t in tasks} == {"pay-a", "pay-b"}
    assert params.order_id == "order-1"
    tx = store.orders["order-1"].online_transaction
    assert tx.type == TransactionType.REFUND
    assert tx.status == OnlineTransactionStatus.PROCESSING
    assert set(tx.transaction_ids) == {"refund-pay-a", "refund-pay-b"}


@pytest.mark.asyncio
async def test_nothing_to_refund(service, store, deadline):
    store.put(build_order(events=(build_event("500"),)))
    with pytest.raises(NothingToRefundException):
        await service.create_online_refunds("order-1", deadline=deadline)


@pytest.mark.asyncio
async def test_all_refunds_failing_clears_pending_transaction(service, store, adapter, deadline):
    store.put(build_order(events=(card_payment("3000", "pay-a"),)))
    adapter.refund_results = RefundBatchResult(
        errors=[RefundFailure(task=RefundTask(payment_id="pay-a", amount=Decimal("3000")), reason="declined")]
    )

    result = await service.create_online_refunds("order-1", deadline=deadline)

    assert result.refund_ids == []
    assert result.errors[0].reason == "declined"
    assert store.orders["order-1"].online_transaction is None
