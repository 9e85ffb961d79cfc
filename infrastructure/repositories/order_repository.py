"""
订单仓储实现 - 使用SQLAlchemy实现数据访问

账本以 JSON 列存储，金额统一序列化为字符串以保持 Decimal 精度。
保存时按版本号做条件更新，行数为 0 即视为并发修改。
"""
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.order.entity import (
    Actor,
    ActorRole,
    DeliveryMethod,
    FinancialEvent,
    FinancialMethod,
    FinancialState,
    Financials,
    OnlineProvider,
    OnlineTransaction,
    OnlineTransactionStatus,
    Order,
    OrderStatus,
    StatusHistoryEntry,
    TransactionType,
)
from domain.order.exceptions import ConcurrentOrderModificationException
from domain.order.repository import OrderRepository
from infrastructure.models.order import OrderModel


logger = get_logger(__name__)


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _actor_to_json(actor: Optional[Actor]) -> Optional[dict]:
    if actor is None:
        return None
    return {"name": actor.name, "role": actor.role.value}


def _actor_from_json(data: Optional[dict]) -> Optional[Actor]:
    if not data:
        return None
    return Actor(name=data["name"], role=ActorRole(data["role"]))


def _event_to_json(e: FinancialEvent) -> dict[str, Any]:
    return {
        "id": e.id,
        "type": e.type.value,
        "method": e.method.value,
        "amount": str(e.amount),
        "actor": _actor_to_json(e.actor),
        "created_at": _dt(e.created_at),
        "provider": e.provider,
        "transaction_id": e.transaction_id,
        "original_payment_id": e.original_payment_id,
        "external_reference": e.external_reference,
        "voided": e.voided,
        "voided_at": _dt(e.voided_at),
        "voided_note": e.voided_note,
        "voided_by": _actor_to_json(e.voided_by),
    }


def _event_from_json(d: dict[str, Any]) -> FinancialEvent:
    return FinancialEvent(
        id=d["id"],
        type=TransactionType(d["type"]),
        method=FinancialMethod(d["method"]),
        amount=Decimal(d["amount"]),
        actor=_actor_from_json(d["actor"]),
        created_at=_parse_dt(d["created_at"]),
        provider=d.get("provider"),
        transaction_id=d.get("transaction_id"),
        original_payment_id=d.get("original_payment_id"),
        external_reference=d.get("external_reference"),
        voided=d.get("voided", False),
        voided_at=_parse_dt(d.get("voided_at")),
        voided_note=d.get("voided_note"),
        voided_by=_actor_from_json(d.get("voided_by")),
    )


def _history_to_json(h: StatusHistoryEntry) -> dict[str, Any]:
    return {
        "status": h.status.value,
        "changed_at": _dt(h.changed_at),
        "actor": _actor_to_json(h.actor),
        "last_active_status": h.last_active_status.value if h.last_active_status else None,
        "is_rollback": h.is_rollback,
        "reason": h.reason,
    }


def _history_from_json(d: dict[str, Any]) -> StatusHistoryEntry:
    last_active = d.get("last_active_status")
    return StatusHistoryEntry(
        status=OrderStatus(d["status"]),
        changed_at=_parse_dt(d["changed_at"]),
        actor=_actor_from_json(d.get("actor")),
        last_active_status=OrderStatus(last_active) if last_active else None,
        is_rollback=d.get("is_rollback", False),
        reason=d.get("reason"),
    )


def _online_tx_to_json(tx: Optional[OnlineTransaction]) -> Optional[dict[str, Any]]:
    if tx is None:
        return None
    return {
        "type": tx.type.value,
        "status": tx.status.value,
        "providers": [p.value for p in tx.providers],
        "started_at": _dt(tx.started_at),
        "transaction_ids": list(tx.transaction_ids),
        "confirmation_url": tx.confirmation_url,
        "amount": str(tx.amount) if tx.amount is not None else None,
    }


def _online_tx_from_json(d: Optional[dict[str, Any]]) -> Optional[OnlineTransaction]:
    if not d:
        return None
    return OnlineTransaction(
        type=TransactionType(d["type"]),
        status=OnlineTransactionStatus(d["status"]),
        providers=tuple(OnlineProvider(p) for p in d["providers"]),
        started_at=_parse_dt(d["started_at"]),
        transaction_ids=tuple(d.get("transaction_ids") or ()),
        confirmation_url=d.get("confirmation_url"),
        amount=Decimal(d["amount"]) if d.get("amount") is not None else None,
    )


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            order_number=model.order_number,
            delivery_method=DeliveryMethod(model.delivery_method),
            total_amount=Decimal(str(model.total_amount)),
            customer_id=model.customer_id,
            current_status=OrderStatus(model.current_status),
            status_history=tuple(_history_from_json(h) for h in model.status_history or ()),
            financials=Financials(
                event_history=tuple(_event_from_json(e) for e in model.event_history or ()),
                state=FinancialState(model.financial_state),
                total_paid=Decimal(str(model.total_paid)),
                total_refunded=Decimal(str(model.total_refunded)),
                current_online_transaction=_online_tx_from_json(model.online_transaction),
            ),
            created_at=model.created_at,
            updated_at=model.updated_at,
            version=model.version,
        )

    def _columns(self, entity: Order) -> dict[str, Any]:
        f = entity.financials
        tx = f.current_online_transaction
        return {
            "order_number": entity.order_number,
            "customer_id": entity.customer_id,
            "delivery_method": entity.delivery_method.value,
            "total_amount": entity.total_amount,
            "current_status": entity.current_status.value,
            "status_history": [_history_to_json(h) for h in entity.status_history],
            "financial_state": f.state.value,
            "total_paid": f.total_paid,
            "total_refunded": f.total_refunded,
            "event_history": [_event_to_json(e) for e in f.event_history],
            "online_transaction": _online_tx_to_json(tx),
            "online_tx_status": tx.status.value if tx else None,
            "online_tx_started_at": tx.started_at if tx else None,
        }

    async def add(self, order: Order) -> Order:
        now = datetime.now(timezone.utc)
        created = replace(order, created_at=order.created_at or now, updated_at=now)
        model = OrderModel(
            id=created.id,
            version=created.version,
            created_at=created.created_at,
            updated_at=created.updated_at,
            **self._columns(created),
        )
        self.session.add(model)
        await self.session.flush()
        logger.info("order_created", order_id=created.id, order_number=created.order_number)
        return created

    async def get(self, order_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.id == order_id)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_for_update(self, order_id: str) -> Optional[Order]:
        # SQLite 不支持 FOR UPDATE，写事务本身已串行；PostgreSQL 下为行锁
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def save(self, order: Order) -> Order:
        now = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(OrderModel)
            .where(OrderModel.id == order.id, OrderModel.version == order.version)
            .values(version=order.version + 1, updated_at=now, **self._columns(order))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning("order_save_conflict", order_id=order.id, expected_version=order.version)
            raise ConcurrentOrderModificationException(order.id, order.version)
        return replace(order, version=order.version + 1, updated_at=now)

    async def list_stuck_online_transactions(self, started_before: datetime) -> list[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(
                OrderModel.online_tx_status == OnlineTransactionStatus.INIT.value,
                OrderModel.online_tx_started_at <= started_before,
            )
            .order_by(OrderModel.online_tx_started_at)
        )
        return [self._to_entity(m) for m in result.scalars().all()]
