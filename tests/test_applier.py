from decimal import Decimal

import pytest

from domain.common.exceptions import DomainValidationException
from domain.order.applier import LedgerTransaction, TransactionApplier
from domain.order.entity import (
    SYSTEM_ACTOR,
    FinancialMethod,
    FinancialState,
    OnlineProvider,
    OrderStatus,
    TransactionType,
)
from domain.order.exceptions import (
    AmountGuardViolationException,
    FinancialEventAlreadyVoidedException,
    FinancialEventNotFoundException,
    FinancialEventNotVoidableException,
)
from tests.support import ADMIN, NOW, build_event, build_order, card_payment


@pytest.fixture
def applier():
    return TransactionApplier()


def card_online(amount: str, transaction_id: str, tx_type=TransactionType.PAYMENT, **kwargs) -> LedgerTransaction:
    return LedgerTransaction(
        transaction_type=tx_type,
        method=FinancialMethod.CARD_ONLINE,
        amount=Decimal(amount),
        provider=OnlineProvider.YOOKASSA.value,
        transaction_id=transaction_id,
        **kwargs,
    )


def test_card_payment_settles_order_and_replay_is_noop(applier):
    order = build_order(total="1000")

    first = applier.apply_order_financials(order, card_online("1000", "tx1"), actor=SYSTEM_ACTOR, now=NOW)
    assert first.applied is True
    assert first.order.financials.state == FinancialState.PAID
    assert first.net_paid == Decimal("1000")
    assert first.net_paid_delta == Decimal("1000")

    again = applier.apply_order_financials(first.order, card_online("1000", "tx1"), actor=SYSTEM_ACTOR, now=NOW)
    assert again.applied is False
    assert again.order is first.order
    assert len(again.order.financials.event_history) == 1
    assert again.net_paid == Decimal("1000")


def test_refund_without_payment_is_rejected(applier):
    order = build_order(total="1000")
    refund = LedgerTransaction(
        transaction_type=TransactionType.REFUND,
        method=FinancialMethod.CASH,
        amount=Decimal("600"),
    )
    with pytest.raises(AmountGuardViolationException):
        applier.apply_order_financials(order, refund, actor=ADMIN, now=NOW)


def test_voided_transaction_id_can_be_recorded_again(applier):
    order = build_order(
        events=(build_event("500", method=FinancialMethod.BANK_TRANSFER, transaction_id="bt-1", voided=True),)
    )
    tx = LedgerTransaction(
        transaction_type=TransactionType.PAYMENT,
        method=FinancialMethod.BANK_TRANSFER,
        amount=Decimal("500"),
        provider="severe_bank",
        transaction_id="bt-1",
    )
    result = applier.apply_order_financials(order, tx, actor=ADMIN, now=NOW)
    assert result.applied is True
    assert result.order.net_paid == Decimal("500")


def test_offline_payment_cannot_exceed_amount_due(applier):
    order = build_order(total="1000", events=(build_event("800"),))
    tx = LedgerTransaction(
        transaction_type=TransactionType.PAYMENT,
        method=FinancialMethod.CASH,
        amount=Decimal("300"),
    )
    with pytest.raises(AmountGuardViolationException):
        applier.apply_order_financials(order, tx, actor=ADMIN, now=NOW)


def test_sub_cent_remainder_rounds_to_exact_payment(applier):
    order = build_order(total="1000", events=(build_event("800"),))
    tx = LedgerTransaction(
        transaction_type=TransactionType.PAYMENT,
        method=FinancialMethod.CASH,
        amount=Decimal("200.004"),
    )
    result = applier.apply_order_financials(order, tx, actor=ADMIN, now=NOW)
    assert result.order.financials.state == FinancialState.PAID


def test_gateway_settled_overpayment_is_recorded(applier):
    order = build_order(total="1000", events=(build_event("1000"),))
    result = applier.apply_order_financials(order, card_online("250", "tx-over"), actor=SYSTEM_ACTOR, now=NOW)
    assert result.applied is True
    assert result.order.financials.state == FinancialState.OVERPAID


def test_cancelled_order_accepts_no_offline_payment(applier):
    order = build_order(status=OrderStatus.CANCELLED)
    tx = LedgerTransaction(
        transaction_type=TransactionType.PAYMENT,
        method=FinancialMethod.CASH_ON_RECEIPT,
        amount=Decimal("10"),
    )
    with pytest.raises(AmountGuardViolationException):
        applier.apply_order_financials(order, tx, actor=ADMIN, now=NOW)


def test_failed_gateway_transaction_writes_nothing(applier):
    order = build_order()
    result = applier.apply_order_financials(
        order, card_online("100", "tx-failed", mark_as_failed=True), actor=SYSTEM_ACTOR, now=NOW
    )
    assert result.applied is False
    assert result.order.financials.event_history == ()


@pytest.mark.parametrize(
    "tx, field",
    [
        (LedgerTransaction(TransactionType.PAYMENT, FinancialMethod.CARD_OFFLINE, Decimal("10"), transaction_id="x"), "method"),
        (LedgerTransaction(TransactionType.REFUND, FinancialMethod.CASH_ON_RECEIPT, Decimal("10")), "method"),
        (LedgerTransaction(TransactionType.PAYMENT, FinancialMethod.BANK_TRANSFER, Decimal("10"), provider="severe_bank"), "transaction_id"),
        (LedgerTransaction(TransactionType.PAYMENT, FinancialMethod.BANK_TRANSFER, Decimal("10"), provider="nowhere", transaction_id="x"), "provider"),
        (LedgerTransaction(TransactionType.PAYMENT, FinancialMethod.CASH, Decimal("10"), provider="severe_bank"), "provider"),
        (LedgerTransaction(TransactionType.PAYMENT, FinancialMethod.CASH, Decimal("0")), "amount"),
    ],
)
def test_validation_rejects_malformed_transactions(applier, tx, field):
    with pytest.raises(DomainValidationException) as exc_info:
        applier.apply_order_financials(build_order(), tx, actor=ADMIN, now=NOW)
    assert exc_info.value.field == field


def test_cash_on_receipt_only_after_handover(applier):
    tx = LedgerTransaction(TransactionType.PAYMENT, FinancialMethod.CASH_ON_RECEIPT, Decimal("100"))
    with pytest.raises(DomainValidationException):
        applier.apply_order_financials(build_order(status=OrderStatus.PROCESSING), tx, actor=ADMIN, now=NOW)

    result = applier.apply_order_financials(build_order(status=OrderStatus.DELIVERED), tx, actor=ADMIN, now=NOW)
    assert result.applied is True


def test_void_excludes_event_and_keeps_history(applier):
    cash = build_event("400")
    order = build_order(total="1000", events=(cash, build_event("600")))

    result = applier.void_event(order, cash.id, note="entered twice", actor=ADMIN, now=NOW)

    assert len(result.order.financials.event_history) == 2
    assert result.event.voided is True
    assert result.event.voided_by == ADMIN
    assert result.event.voided_note == "entered twice"
    assert result.net_paid_delta == Decimal("-400")
    assert result.order.financials.state == FinancialState.PARTIALLY_PAID


def test_void_rejections(applier):
    card = card_payment("500", "tx-card")
    voided = build_event("100", voided=True)
    order = build_order(events=(card, voided))

    with pytest.raises(FinancialEventNotFoundException):
        applier.void_event(order, "missing", note=None, actor=ADMIN, now=NOW)
    with pytest.raises(FinancialEventAlreadyVoidedException):
        applier.void_event(order, voided.id, note=None, actor=ADMIN, now=NOW)
    with pytest.raises(FinancialEventNotVoidableException):
        applier.void_event(order, card.id, note=None, actor=ADMIN, now=NOW)


def test_card_refund_stats_skip_refunded_payments(applier):
    refunded = card_payment("300", "pay-a")
    open_payment = card_payment("700", "pay-b")
    refund = build_event(
        "300",
        tx_type=TransactionType.REFUND,
        method=FinancialMethod.CARD_ONLINE,
        transaction_id="ref-a",
        provider=OnlineProvider.YOOKASSA.value,
        original_payment_id="pay-a",
    )
    order = build_order(events=(refunded, open_payment, refund, build_event("50")))

    stats = applier.card_refund_stats(order)

    assert [p.transaction_id for p in stats.payments] == ["pay-b"]
    assert stats.total == Decimal("700")
    assert stats.providers == (OnlineProvider.YOOKASSA,)
