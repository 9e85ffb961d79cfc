"""
Order ledger DTOs: admin commands in, camelCase read models out.

Read models use camelCase aliases because the admin dashboard consumes the
same shapes through fanout patches.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel
from pydantic.types import condecimal

from domain.order.entity import (
    Actor,
    DeliveryMethod,
    FinancialEvent,
    FinancialMethod,
    FinancialState,
    OnlineProvider,
    OnlineTransaction,
    OnlineTransactionStatus,
    Order,
    OrderStatus,
    StatusHistoryEntry,
    TransactionType,
)
from domain.order.status_machine import StatusAction


Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActorDTO(_CamelModel):
    name: str
    role: str

    @classmethod
    def from_entity(cls, actor: Optional[Actor]) -> Optional["ActorDTO"]:
        if actor is None:
            return None
        return cls(name=actor.name, role=actor.role.value)


class FinancialEventDTO(_CamelModel):
    id: str
    type: TransactionType
    method: FinancialMethod
    amount: Money
    provider: Optional[str] = None
    transaction_id: Optional[str] = None
    original_payment_id: Optional[str] = None
    external_reference: Optional[str] = None
    actor: ActorDTO
    created_at: datetime
    voided: bool = False
    voided_at: Optional[datetime] = None
    voided_note: Optional[str] = None
    voided_by: Optional[ActorDTO] = None

    @classmethod
    def from_entity(cls, e: FinancialEvent) -> "FinancialEventDTO":
        return cls(
            id=e.id,
            type=e.type,
            method=e.method,
            amount=e.amount,
            provider=e.provider,
            transaction_id=e.transaction_id,
            original_payment_id=e.original_payment_id,
            external_reference=e.external_reference,
            actor=ActorDTO.from_entity(e.actor),
            created_at=e.created_at,
            voided=e.voided,
            voided_at=e.voided_at,
            voided_note=e.voided_note,
            voided_by=ActorDTO.from_entity(e.voided_by),
        )


class OnlineTransactionDTO(_CamelModel):
    type: TransactionType
    status: OnlineTransactionStatus
    providers: list[OnlineProvider]
    transaction_ids: list[str]
    started_at: datetime
    confirmation_url: Optional[str] = None
    amount: Optional[Money] = None

    @classmethod
    def from_entity(cls, tx: Optional[OnlineTransaction]) -> Optional["OnlineTransactionDTO"]:
        if tx is None:
            return None
        return cls(
            type=tx.type,
            status=tx.status,
            providers=list(tx.providers),
            transaction_ids=list(tx.transaction_ids),
            started_at=tx.started_at,
            confirmation_url=tx.confirmation_url,
            amount=tx.amount,
        )


class StatusHistoryDTO(_CamelModel):
    status: OrderStatus
    changed_at: datetime
    changed_by: Optional[ActorDTO] = None
    last_active_status: Optional[OrderStatus] = None
    is_rollback: bool = False
    reason: Optional[str] = None

    @classmethod
    def from_entity(cls, h: StatusHistoryEntry) -> "StatusHistoryDTO":
        return cls(
            status=h.status,
            changed_at=h.changed_at,
            changed_by=ActorDTO.from_entity(h.actor),
            last_active_status=h.last_active_status,
            is_rollback=h.is_rollback,
            reason=h.reason,
        )


class FinancialsDTO(_CamelModel):
    state: FinancialState
    total_paid: Money
    total_refunded: Money
    net_paid: Money
    event_history: list[FinancialEventDTO]
    current_online_transaction: Optional[OnlineTransactionDTO] = None


class OrderDTO(_CamelModel):
    id: str
    order_number: int
    customer_id: Optional[str] = None
    delivery_method: DeliveryMethod
    total_amount: Money
    current_status: OrderStatus
    last_active_status: Optional[OrderStatus] = None
    status_history: list[StatusHistoryDTO]
    financials: FinancialsDTO
    version: int

    @classmethod
    def from_entity(cls, order: Order) -> "OrderDTO":
        f = order.financials
        return cls(
            id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            delivery_method=order.delivery_method,
            total_amount=order.total_amount,
            current_status=order.current_status,
            last_active_status=order.last_active_status,
            status_history=[StatusHistoryDTO.from_entity(h) for h in order.status_history],
            financials=FinancialsDTO(
                state=f.state,
                total_paid=f.total_paid,
                total_refunded=f.total_refunded,
                net_paid=f.net_paid,
                event_history=[FinancialEventDTO.from_entity(e) for e in f.event_history],
                current_online_transaction=OnlineTransactionDTO.from_entity(f.current_online_transaction),
            ),
            version=order.version,
        )


# ---- commands ----

class RecordFinancialEventCommand(BaseModel):
    """Offline payment or refund entered by an operator."""

    transaction_type: TransactionType
    method: FinancialMethod
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    provider: Optional[str] = None
    transaction_id: Optional[str] = Field(default=None, max_length=200)
    original_payment_id: Optional[str] = None
    external_reference: Optional[str] = Field(default=None, max_length=200)


class VoidEventCommand(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class ChangeStatusCommand(BaseModel):
    action: StatusAction
    target_status: Optional[OrderStatus] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class CreateOnlinePaymentCommand(BaseModel):
    provider: OnlineProvider = OnlineProvider.YOOKASSA
    amount: condecimal(gt=0, max_digits=15, decimal_places=2)  # type: ignore[valid-type]
    payment_token: Optional[str] = None
    return_url: Optional[str] = None


class OnlinePaymentResult(_CamelModel):
    order_id: str
    payment_id: str
    confirmation_url: Optional[str] = None
