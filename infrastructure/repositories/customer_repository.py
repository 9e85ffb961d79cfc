"""
客户与关键事件仓储实现
"""
from datetime import timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.order.critical_event import CriticalEvent, CriticalEventCategory
from domain.order.repository import CriticalEventRepository, CustomerRepository
from infrastructure.models.customer import CriticalEventModel, CustomerModel


logger = get_logger(__name__)


class SQLAlchemyCustomerRepository(CustomerRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add_total_spent(self, customer_id: str, delta: Decimal) -> bool:
        """原子累加，避免读改写丢失并发更新"""
        result = await self.session.execute(
            update(CustomerModel)
            .where(CustomerModel.id == customer_id)
            .values(total_spent=CustomerModel.total_spent + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        logger.info("customer_total_spent_updated", customer_id=customer_id, delta=delta)
        return True

    async def get_total_spent(self, customer_id: str) -> Decimal | None:
        result = await self.session.execute(
            select(CustomerModel.total_spent).where(CustomerModel.id == customer_id)
        )
        value = result.scalar_one_or_none()
        return Decimal(str(value)) if value is not None else None


class SQLAlchemyCriticalEventRepository(CriticalEventRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: CriticalEventModel) -> CriticalEvent:
        created_at = model.created_at
        if created_at is not None and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return CriticalEvent(
            id=model.id,
            category=CriticalEventCategory(model.category),
            reason=model.reason,
            data=model.data or {},
            created_at=created_at,
            resolved=model.resolved,
            resolved_at=model.resolved_at,
            comment=model.comment,
        )

    async def add(self, event: CriticalEvent) -> CriticalEvent:
        model = CriticalEventModel(
            category=event.category.value,
            reason=event.reason,
            data=event.data,
            created_at=event.created_at,
            resolved=event.resolved,
            comment=event.comment,
        )
        self.session.add(model)
        await self.session.flush()
        return self._to_entity(model)

    async def list_unresolved(self, limit: int = 100) -> list[CriticalEvent]:
        result = await self.session.execute(
            select(CriticalEventModel)
            .where(CriticalEventModel.resolved.is_(False))
            .order_by(CriticalEventModel.created_at.desc())
            .limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]
