"""
API依赖项 - 服务、截止时间与操作人
"""
from typing import Optional

from fastapi import Header, Request

from application.services.order_financials_service import OrderFinancialsService
from core.config import settings
from core.deadline import Deadline
from domain.order.entity import Actor, ActorRole


async def get_order_financials_service(request: Request) -> OrderFinancialsService:
    """服务在应用启动时装配（见 main.lifespan）"""
    return request.app.state.order_financials_service


async def get_deadline(request: Request) -> Deadline:
    deadline = getattr(request.state, "deadline", None)
    if deadline is None:
        deadline = Deadline.after(settings.REQUEST_TIMEOUT_SECONDS)
    return deadline


async def get_actor(
    x_actor_name: Optional[str] = Header(default=None, alias="X-Actor-Name"),
) -> Actor:
    """后台操作人；认证由前置网关完成，这里只透传名称用于审计"""
    name = (x_actor_name or "").strip() or "admin"
    return Actor(name=name, role=ActorRole.ADMIN)
