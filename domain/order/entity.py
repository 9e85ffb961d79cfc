"""
订单领域实体 - 订单聚合根与财务账本

账本（event_history）只追加，已有条目唯一允许的变更是作废标记。
聚合根及其值对象均为不可变 dataclass：领域操作返回新的 Order，
由应用层在同一个 Unit of Work 中完成 “加载 → 纯变换 → 保存”。
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from domain.common.exceptions import DomainValidationException
from domain.common.money import ZERO, to_money


class OrderStatus(str, Enum):
    """订单状态枚举"""
    DRAFT = "draft"                            # 草稿（未结账）
    CONFIRMED = "confirmed"                    # 已确认
    PROCESSING = "processing"                  # 备货中
    READY_FOR_PICKUP = "ready_for_pickup"      # 待自提
    READY_FOR_SHIPMENT = "ready_for_shipment"  # 待发货
    PICKED_UP = "picked_up"                    # 已自提
    IN_TRANSIT = "in_transit"                  # 运输中
    DELIVERED = "delivered"                    # 已送达
    COMPLETED = "completed"                    # 已完成
    CANCELLED = "cancelled"                    # 已取消


ACTIVE_STATUSES = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.READY_FOR_SHIPMENT,
    OrderStatus.PICKED_UP,
    OrderStatus.IN_TRANSIT,
    OrderStatus.DELIVERED,
})

FINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# 货到付款只能在客户实际收货的节点登记
CASH_ON_RECEIPT_STATUSES = frozenset({
    OrderStatus.PICKED_UP,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
})


class DeliveryMethod(str, Enum):
    SELF_PICKUP = "self_pickup"
    COURIER = "courier"
    TRANSPORT_COMPANY = "transport_company"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"


class FinancialMethod(str, Enum):
    """资金流转方式"""
    CARD_ONLINE = "card_online"
    CARD_OFFLINE = "card_offline"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_RECEIPT = "cash_on_receipt"


PAYMENT_METHODS = frozenset({
    FinancialMethod.CARD_ONLINE,
    FinancialMethod.BANK_TRANSFER,
    FinancialMethod.CASH_ON_RECEIPT,
    FinancialMethod.CASH,
})

REFUND_METHODS = frozenset({
    FinancialMethod.CARD_ONLINE,
    FinancialMethod.CARD_OFFLINE,
    FinancialMethod.CASH,
    FinancialMethod.BANK_TRANSFER,
})

TRANSACTION_ID_REQUIRED_METHODS = frozenset({
    FinancialMethod.CARD_ONLINE,
    FinancialMethod.BANK_TRANSFER,
    FinancialMethod.CARD_OFFLINE,
})

# 网关已结算的事实必须入账，即使超出应付金额
OVERPAYMENT_ALLOWED_METHODS = frozenset({FinancialMethod.CARD_ONLINE})


class OnlineProvider(str, Enum):
    """在线收单渠道"""
    YOOKASSA = "yookassa"


class BankProvider(str, Enum):
    """银行转账渠道"""
    SEVERE_BANK = "severe_bank"
    BANKOMYOT = "bankomyot"
    IRON_CREDIT = "iron_credit"
    OLD_LEDGER = "old_ledger"
    BLACK_LEDGER = "black_ledger"
    TRUST_AND_HOPE = "trust_and_hope"
    CASHFLOW_UNION = "cashflow_union"
    NORTH_CAPITAL = "north_capital"


class FinancialState(str, Enum):
    """由账本推导出的财务状态（禁止手工赋值）"""
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERPAID = "overpaid"
    NEGATIVE_BALANCE = "negative_balance"
    VOIDED = "voided"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    OVER_REFUNDED = "over_refunded"


class OnlineTransactionStatus(str, Enum):
    INIT = "init"
    PROCESSING = "processing"


class ActorRole(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"
    SYSTEM = "system"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_event_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Actor:
    name: str
    role: ActorRole


SYSTEM_ACTOR = Actor(name="SYSTEM", role=ActorRole.SYSTEM)


@dataclass(frozen=True)
class FinancialEvent:
    """
    账本条目 - 一次付款或退款

    业务规则：
    1. 金额必须大于0
    2. 创建后金额与ID不可更改，只允许作废
    """

    id: str
    type: TransactionType
    method: FinancialMethod
    amount: Decimal
    actor: Actor
    created_at: datetime
    provider: Optional[str] = None
    transaction_id: Optional[str] = None
    original_payment_id: Optional[str] = None
    external_reference: Optional[str] = None
    voided: bool = False
    voided_at: Optional[datetime] = None
    voided_note: Optional[str] = None
    voided_by: Optional[Actor] = None

    def __post_init__(self):
        if self.amount is None or self.amount <= 0:
            raise DomainValidationException(
                f"Financial event amount must be positive: {self.amount}",
                field="amount",
            )
        object.__setattr__(self, "amount", to_money(self.amount))
        object.__setattr__(self, "created_at", _ensure_utc(self.created_at))
        object.__setattr__(self, "voided_at", _ensure_utc(self.voided_at))

    @property
    def signed_amount(self) -> Decimal:
        """对净实收的贡献：付款为正，退款为负"""
        return self.amount if self.type == TransactionType.PAYMENT else -self.amount

    def void(self, *, note: Optional[str], actor: Actor, now: datetime) -> "FinancialEvent":
        return replace(
            self,
            voided=True,
            voided_at=now,
            voided_note=note,
            voided_by=actor,
        )


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: OrderStatus
    changed_at: datetime
    actor: Optional[Actor] = None
    last_active_status: Optional[OrderStatus] = None
    is_rollback: bool = False
    reason: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "changed_at", _ensure_utc(self.changed_at))


@dataclass(frozen=True)
class OnlineTransaction:
    """订单上唯一的在途网关交易"""

    type: TransactionType
    status: OnlineTransactionStatus
    providers: tuple[OnlineProvider, ...]
    started_at: datetime
    transaction_ids: tuple[str, ...] = ()
    confirmation_url: Optional[str] = None
    amount: Optional[Decimal] = None

    def __post_init__(self):
        if not self.providers:
            raise DomainValidationException(
                "Online transaction requires at least one provider",
                field="providers",
            )
        object.__setattr__(self, "started_at", _ensure_utc(self.started_at))


@dataclass(frozen=True)
class Financials:
    event_history: tuple[FinancialEvent, ...] = ()
    state: FinancialState = FinancialState.UNPAID
    total_paid: Decimal = ZERO
    total_refunded: Decimal = ZERO
    current_online_transaction: Optional[OnlineTransaction] = None

    @property
    def net_paid(self) -> Decimal:
        return self.total_paid - self.total_refunded

    @property
    def last_event(self) -> Optional[FinancialEvent]:
        return self.event_history[-1] if self.event_history else None

    def find_event(self, event_id: str) -> Optional[FinancialEvent]:
        for event in self.event_history:
            if event.id == event_id:
                return event
        return None

    def has_transaction(self, transaction_id: Optional[str]) -> bool:
        """幂等键是否已被非作废条目使用"""
        if not transaction_id:
            return False
        return any(
            e.transaction_id == transaction_id and not e.voided
            for e in self.event_history
        )


@dataclass(frozen=True)
class Order:
    """
    订单聚合根

    业务规则：
    1. 订单金额不能为负
    2. 财务状态与汇总金额只由账本推导
    3. 同一订单最多一个在途在线交易
    """

    id: str
    order_number: int
    delivery_method: DeliveryMethod
    total_amount: Decimal
    customer_id: Optional[str] = None
    current_status: OrderStatus = OrderStatus.DRAFT
    status_history: tuple[StatusHistoryEntry, ...] = ()
    financials: Financials = field(default_factory=Financials)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self):
        if self.total_amount is None or self.total_amount < 0:
            raise DomainValidationException(
                f"Order total must not be negative: {self.total_amount}",
                field="total_amount",
            )
        object.__setattr__(self, "total_amount", to_money(self.total_amount))
        object.__setattr__(self, "created_at", _ensure_utc(self.created_at))
        object.__setattr__(self, "updated_at", _ensure_utc(self.updated_at))

    @property
    def is_active(self) -> bool:
        return self.current_status in ACTIVE_STATUSES

    @property
    def net_paid(self) -> Decimal:
        return self.financials.net_paid

    @property
    def online_transaction(self) -> Optional[OnlineTransaction]:
        return self.financials.current_online_transaction

    @property
    def last_active_status(self) -> Optional[OrderStatus]:
        """历史中最后一个活跃状态，用于展示取消前的进度"""
        if self.current_status in ACTIVE_STATUSES:
            return self.current_status
        if self.status_history:
            latest = self.status_history[-1]
            if latest.status == OrderStatus.CANCELLED and latest.last_active_status is not None:
                return latest.last_active_status
        for entry in reversed(self.status_history):
            if entry.status in ACTIVE_STATUSES:
                return entry.status
        return None

    def with_financials(self, financials: Financials) -> "Order":
        return replace(self, financials=financials)

    def with_online_transaction(self, tx: Optional[OnlineTransaction]) -> "Order":
        return replace(self, financials=replace(self.financials, current_online_transaction=tx))
