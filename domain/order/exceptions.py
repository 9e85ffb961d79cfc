"""
订单账本领域异常

所有拒绝均在变更前抛出，调用方负责向上呈现。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.ledger_codes import LedgerCode


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=LedgerCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details={"order_id": order_id},
        )


class FinancialEventNotFoundException(BusinessException):
    def __init__(self, event_id: str):
        super().__init__(
            code=LedgerCode.EVENT_NOT_FOUND,
            message="Financial event not found",
            error_type="FinancialEventNotFound",
            details={"event_id": event_id},
        )


class FinancialEventAlreadyVoidedException(BusinessException):
    def __init__(self, event_id: str):
        super().__init__(
            code=LedgerCode.EVENT_ALREADY_VOIDED,
            message="Financial event is already voided",
            error_type="FinancialEventAlreadyVoided",
            details={"event_id": event_id},
        )


class FinancialEventNotVoidableException(BusinessException):
    def __init__(self, event_id: str, reason: str):
        super().__init__(
            code=LedgerCode.EVENT_NOT_VOIDABLE,
            message=f"Financial event cannot be voided: {reason}",
            error_type="FinancialEventNotVoidable",
            details={"event_id": event_id, "reason": reason},
        )


class AmountGuardViolationException(BusinessException):
    """付款超过应付或退款超过净实收"""

    def __init__(self, message: str, *, amount: Decimal, net_paid: Decimal, limit: Decimal):
        super().__init__(
            code=LedgerCode.AMOUNT_GUARD_VIOLATION,
            message=message,
            error_type="AmountGuardViolation",
            details={"amount": str(amount), "net_paid": str(net_paid), "limit": str(limit)},
            field="amount",
        )


class OrderAlreadyPaidException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=LedgerCode.ORDER_ALREADY_PAID,
            message="Order is already fully paid",
            error_type="OrderAlreadyPaid",
            details={"order_id": order_id},
        )


class NothingToRefundException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=LedgerCode.NOTHING_TO_REFUND,
            message="Order has no refundable online payments",
            error_type="NothingToRefund",
            details={"order_id": order_id},
        )


class OrderNotFullyPaidException(BusinessException):
    def __init__(self, order_id: str, net_paid: Decimal, total_amount: Decimal):
        super().__init__(
            code=LedgerCode.ORDER_NOT_FULLY_PAID,
            message="Order cannot be completed before it is fully paid",
            error_type="OrderNotFullyPaid",
            details={
                "order_id": order_id,
                "net_paid": str(net_paid),
                "total_amount": str(total_amount),
            },
        )


class OrderAmountBelowMinimumException(BusinessException):
    def __init__(self, order_id: str, total_amount: Decimal, minimum: Decimal):
        super().__init__(
            code=LedgerCode.ORDER_AMOUNT_BELOW_MINIMUM,
            message=f"Order total is below the minimum order amount {minimum}",
            error_type="OrderAmountBelowMinimum",
            details={"order_id": order_id, "total_amount": str(total_amount), "minimum": str(minimum)},
        )


class IllegalStatusTransitionException(BusinessException):
    def __init__(self, current: str, requested: Optional[str], reason: str):
        super().__init__(
            code=LedgerCode.ILLEGAL_STATUS_TRANSITION,
            message=f"Illegal status transition from {current}: {reason}",
            error_type="IllegalStatusTransition",
            details={"current_status": current, "requested_status": requested, "reason": reason},
            field="status",
        )


class OrderNotActiveException(BusinessException):
    def __init__(self, order_id: str, status: str):
        super().__init__(
            code=LedgerCode.ORDER_NOT_ACTIVE,
            message=f"Order is not in an active status: {status}",
            error_type="OrderNotActive",
            details={"order_id": order_id, "status": status},
        )


class OnlineTransactionInProgressException(BusinessException):
    def __init__(self, order_id: str):
        super().__init__(
            code=LedgerCode.ONLINE_TRANSACTION_IN_PROGRESS,
            message="Another online transaction is already in progress for this order",
            error_type="OnlineTransactionInProgress",
            details={"order_id": order_id},
        )


class ConcurrentOrderModificationException(BusinessException):
    def __init__(self, order_id: str, expected_version: int):
        super().__init__(
            code=LedgerCode.CONCURRENT_MODIFICATION,
            message="Order was modified concurrently",
            error_type="ConcurrentOrderModification",
            details={"order_id": order_id, "expected_version": expected_version},
        )
