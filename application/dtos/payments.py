"""
Payment provider DTOs (Pydantic v2) used at the provider adapter boundary.

Adapters translate their wire formats into these shapes; the ledger never
sees a gateway payload directly.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.types import condecimal

from domain.order.entity import OnlineProvider, TransactionType


class CanonicalTransaction(BaseModel):
    """Normalized gateway transaction, shared by webhooks and reconciliation."""

    provider: OnlineProvider
    transaction_type: TransactionType
    transaction_id: Optional[str] = None
    original_payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    finished: bool = False
    mark_as_failed: bool = False
    confirmation_url: Optional[str] = None
    order_id: Optional[str] = None
    raw_status: Optional[str] = None

    def missing_fields(self) -> list[str]:
        """Mandatory fields absent on a finished transaction."""
        missing = []
        if not self.transaction_id:
            missing.append("transaction_id")
        if not self.mark_as_failed and (self.amount is None or self.amount <= 0):
            missing.append("amount")
        if self.transaction_type == TransactionType.REFUND and not self.original_payment_id:
            missing.append("original_payment_id")
        return missing


class StuckTransactionRef(BaseModel):
    """What an adapter needs to know about a stuck order to list candidates."""

    order_id: str
    transaction_type: TransactionType
    started_at: datetime
    transaction_ids: list[str] = Field(default_factory=list)


class PaymentParams(BaseModel):
    order_id: str
    order_number: int
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    currency: str = "RUB"
    customer_id: Optional[str] = None
    payment_token: Optional[str] = None
    return_url: Optional[str] = None
    description: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        u = (v or "").upper()
        if len(u) != 3 or not u.isalpha():
            raise ValueError("currency must be ISO-4217 alpha-3")
        return u


class PaymentCreation(BaseModel):
    payment_id: Optional[str] = None
    confirmation_url: Optional[str] = None
    error: Optional[str] = None


class RefundTask(BaseModel):
    payment_id: str
    amount: condecimal(gt=0)  # type: ignore[valid-type]


class RefundParams(BaseModel):
    order_id: str
    order_number: int
    currency: str = "RUB"
    description: Optional[str] = None


class RefundFailure(BaseModel):
    task: RefundTask
    reason: str


class RefundBatchResult(BaseModel):
    refund_ids: list[str] = Field(default_factory=list)
    errors: list[RefundFailure] = Field(default_factory=list)


class WebhookRequest(BaseModel):
    """Transport-level facts an adapter may use to authenticate a push."""

    headers: dict[str, str] = Field(default_factory=dict)
    client_host: Optional[str] = None
    body: bytes = b""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def header(self, name: str) -> Optional[str]:
        lname = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lname:
                return value
        return None


class WebhookOutcome(BaseModel):
    accepted: bool
    applied: bool = False
    duplicate: bool = False
    reason: Optional[str] = None
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None

    def as_log_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
