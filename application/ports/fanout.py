"""
Order update fanout port and message DTOs (contracts-first).

The ledger hands finished patch sets to a NotificationFanout; delivery to
live dashboards (SSE, websockets) is the collaborator's concern.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OrderPatch(_Message):
    """Dot-path patch, e.g. {"path": "financials.state", "value": "paid"}."""

    path: str
    value: Any = None


class UpdatedOrderData(_Message):
    order_patches: list[OrderPatch] = Field(default_factory=list, alias="orderPatches")
    new_financials_event_entry: Optional[dict[str, Any]] = Field(
        default=None, alias="newFinancialsEventEntry"
    )


class OrderUpdate(_Message):
    order_id: str = Field(alias="orderId")
    updated_order_data: UpdatedOrderData = Field(alias="updatedOrderData")


class OrderUpdateMessage(_Message):
    order_update: OrderUpdate = Field(alias="orderUpdate")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


Handler = Callable[[OrderUpdateMessage], Awaitable[None]]


class NotificationFanout(Protocol):
    async def publish(self, message: OrderUpdateMessage) -> None: ...

    async def aclose(self) -> None: ...


__all__ = [
    "OrderPatch",
    "UpdatedOrderData",
    "OrderUpdate",
    "OrderUpdateMessage",
    "NotificationFanout",
    "Handler",
]
