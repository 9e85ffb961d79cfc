"""
订单账本 API 路由 - FastAPI表现层（后台操作）
"""
from fastapi import APIRouter, Body, Depends

from api.dependencies import get_actor, get_deadline, get_order_financials_service
from application.dtos.orders import (
    ChangeStatusCommand,
    CreateOnlinePaymentCommand,
    OnlinePaymentResult,
    OrderDTO,
    RecordFinancialEventCommand,
    VoidEventCommand,
)
from application.dtos.payments import RefundBatchResult
from application.services.order_financials_service import OrderFinancialsService
from core.deadline import Deadline
from core.response import Response as ApiResponse, success_response
from domain.order.entity import Actor

router = APIRouter(
    prefix="/orders",
    tags=["订单账本"]
)


@router.get("/{order_id}", summary="订单财务视图", response_model=ApiResponse[OrderDTO])
async def get_order(
    order_id: str,
    service: OrderFinancialsService = Depends(get_order_financials_service),
):
    order = await service.get_order(order_id)
    return success_response(data=order)


@router.post("/{order_id}/financials/events", summary="登记线下收款/退款", response_model=ApiResponse[OrderDTO])
async def record_financial_event(
    order_id: str,
    cmd: RecordFinancialEventCommand,
    service: OrderFinancialsService = Depends(get_order_financials_service),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    """
    追加一条账本条目

    - **transaction_id**: 幂等键；重复提交同一交易号不会重复入账
    - 银行转账与线下刷卡必须提供 transaction_id
    """
    order = await service.record_event(order_id, cmd, actor=actor, deadline=deadline)
    return success_response(data=order, message="Financial event recorded")


@router.post(
    "/{order_id}/financials/events/{event_id}/void",
    summary="作废账本条目",
    response_model=ApiResponse[OrderDTO],
)
async def void_financial_event(
    order_id: str,
    event_id: str,
    cmd: VoidEventCommand = Body(default_factory=VoidEventCommand),
    service: OrderFinancialsService = Depends(get_order_financials_service),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    order = await service.void_event(order_id, event_id, note=cmd.note, actor=actor, deadline=deadline)
    return success_response(data=order, message="Financial event voided")


@router.post("/{order_id}/status", summary="推进/回退/取消订单", response_model=ApiResponse[OrderDTO])
async def change_order_status(
    order_id: str,
    cmd: ChangeStatusCommand,
    service: OrderFinancialsService = Depends(get_order_financials_service),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    order = await service.change_status(order_id, cmd, actor=actor, deadline=deadline)
    return success_response(data=order, message="Order status changed")


@router.post("/{order_id}/confirm", summary="确认草稿订单", response_model=ApiResponse[OrderDTO])
async def confirm_order(
    order_id: str,
    service: OrderFinancialsService = Depends(get_order_financials_service),
    actor: Actor = Depends(get_actor),
    deadline: Deadline = Depends(get_deadline),
):
    order = await service.confirm_order(order_id, actor=actor, deadline=deadline)
    return success_response(data=order, message="Order confirmed")


@router.post(
    "/{order_id}/financials/online-payment",
    summary="发起在线支付",
    response_model=ApiResponse[OnlinePaymentResult],
)
async def create_online_payment(
    order_id: str,
    cmd: CreateOnlinePaymentCommand,
    service: OrderFinancialsService = Depends(get_order_financials_service),
    deadline: Deadline = Depends(get_deadline),
):
    """返回网关确认页地址；到账结果由回调或对账任务写入账本"""
    result = await service.create_online_payment(order_id, cmd, deadline=deadline)
    return success_response(data=result, message="Online payment created")


@router.post(
    "/{order_id}/financials/online-refunds",
    summary="退回在线卡支付",
    response_model=ApiResponse[RefundBatchResult],
)
async def create_online_refunds(
    order_id: str,
    service: OrderFinancialsService = Depends(get_order_financials_service),
    deadline: Deadline = Depends(get_deadline),
):
    result = await service.create_online_refunds(order_id, deadline=deadline)
    message = "Online refunds created" if not result.errors else "Online refunds partially created"
    return success_response(data=result, message=message)
