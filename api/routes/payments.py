"""
Payments API routes.

Gateway webhook ingress. Keep this thin: authentication, normalization and
ledger application all live behind the application service.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_deadline, get_order_financials_service
from application.dtos.payments import WebhookRequest
from application.ports.payment_provider import ProviderNotConfiguredException
from application.services.order_financials_service import OrderFinancialsService
from core.deadline import Deadline
from core.logging_config import get_logger
from core.response import success_response


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("/webhooks/{provider}")
async def payments_webhook(
    provider: str,
    request: Request,
    service: OrderFinancialsService = Depends(get_order_financials_service),
    deadline: Deadline = Depends(get_deadline),
):
    """Always acknowledged with 200 so the gateway does not retry rejected pushes.

    Server-side failures (database, deadline) still propagate as 5xx and the
    gateway redelivers; re-application is idempotent.
    """
    webhook = WebhookRequest(
        headers=dict(request.headers.items()),
        client_host=request.client.host if request.client else None,
        body=await request.body(),
    )
    try:
        outcome = await service.handle_webhook(provider, webhook, deadline=deadline)
    except ProviderNotConfiguredException:
        logger.warning("webhook_unknown_provider", provider=provider)
        return success_response(data={"accepted": False, "reason": "unknown_provider"}, message="ignored")

    logger.info("webhook_processed", provider=provider, **outcome.as_log_fields())
    return success_response(
        data={"accepted": outcome.accepted, "reason": outcome.reason},
        message="ok" if outcome.accepted else "ignored",
    )
