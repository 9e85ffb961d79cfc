"""
YooKassa adapter over the v3 REST API (httpx, HTTP basic auth).

Notes on the API:
- Every POST carries an ``Idempotence-Key`` header; the key is generated once
  per logical call so transport-level retries reuse it.
- Webhooks are unsigned; authenticity is established by source IP against
  the published notification ranges.
- List endpoints paginate with ``next_cursor`` and filter with
  ``created_at.gte``.
"""
from __future__ import annotations

import asyncio
import ipaddress
import uuid
from datetime import timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    CanonicalTransaction,
    PaymentCreation,
    PaymentParams,
    RefundBatchResult,
    RefundFailure,
    RefundParams,
    RefundTask,
    StuckTransactionRef,
    WebhookRequest,
)
from core.logging_config import get_logger
from core.settings import WebhookSettings, YooKassaSettings, payment_settings
from domain.order.entity import OnlineProvider, TransactionType
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)


logger = get_logger(__name__)

YOOKASSA_WEBHOOK_NETWORKS = (
    "185.71.76.0/27",
    "185.71.77.0/27",
    "77.75.153.0/25",
    "77.75.156.11/32",
    "77.75.156.35/32",
    "77.75.154.128/25",
    "2a02:5180::/32",
)


def _amount(value: Any) -> Optional[Decimal]:
    try:
        return Decimal(str(value)) if value is not None else None
    except (InvalidOperation, ValueError):
        return None


def _money_field(amount: Decimal, currency: str) -> dict[str, str]:
    return {"value": f"{amount:.2f}", "currency": currency}


class YooKassaClient(BasePaymentClient):
    provider = OnlineProvider.YOOKASSA

    def __init__(
        self,
        cfg: Optional[YooKassaSettings] = None,
        webhook: Optional[WebhookSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = cfg or payment_settings.yookassa
        if not cfg.shop_id or not cfg.secret_key:
            raise RuntimeError("PAYMENT__YOOKASSA__SHOP_ID / SECRET_KEY not configured")
        super().__init__(
            base_url=cfg.base_url,
            auth=(cfg.shop_id, cfg.secret_key),
            timeouts=payment_settings.timeouts.model_dump(),
            retry={"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff},
            transport=transport,
        )
        self._cfg = cfg
        self._webhook = webhook or payment_settings.webhook
        extra = self._webhook.ip_allowlist or []
        self._networks = [
            ipaddress.ip_network(n, strict=False) for n in (*YOOKASSA_WEBHOOK_NETWORKS, *extra)
        ]

    # ---- create ----

    async def create_payment(self, params: PaymentParams) -> PaymentCreation:
        payload: dict[str, Any] = {
            "amount": _money_field(params.amount, params.currency),
            "capture": True,
            "confirmation": {
                "type": "redirect",
                "return_url": params.return_url or self._cfg.return_url,
            },
            "description": params.description or f"Order #{params.order_number}",
            "metadata": {
                "order_id": params.order_id,
                "order_number": params.order_number,
                "customer_id": params.customer_id,
                "provider": self.provider.value,
            },
        }
        if params.payment_token:
            payload["payment_token"] = params.payment_token

        try:
            data = await self._request(
                "POST",
                "/payments",
                json=payload,
                headers={"Idempotence-Key": f"payment-{uuid.uuid4()}"},
            )
        except (PaymentProviderError, PaymentRecoverableError) as exc:
            self._log("yookassa_payment_create_failed", order_id=params.order_id, error=exc.message)
            return PaymentCreation(error=exc.message)

        confirmation = data.get("confirmation") or {}
        self._log("yookassa_payment_created", order_id=params.order_id, payment_id=data.get("id"))
        return PaymentCreation(
            payment_id=data.get("id"),
            confirmation_url=confirmation.get("confirmation_url"),
        )

    async def _create_one_refund(self, task: RefundTask, params: RefundParams) -> str:
        data = await self._request(
            "POST",
            "/refunds",
            json={
                "payment_id": task.payment_id,
                "amount": _money_field(task.amount, params.currency),
                "description": params.description or f"Refund for order #{params.order_number}",
                "metadata": {
                    "order_id": params.order_id,
                    "order_number": params.order_number,
                    "provider": self.provider.value,
                },
            },
            headers={"Idempotence-Key": f"refund-{uuid.uuid4()}"},
        )
        refund_id = data.get("id")
        if not refund_id:
            raise PaymentProviderError("Refund response without id", provider=self.provider.value)
        return str(refund_id)

    async def create_refund(self, tasks: list[RefundTask], params: RefundParams) -> RefundBatchResult:
        settled = await asyncio.gather(
            *(self._create_one_refund(task, params) for task in tasks),
            return_exceptions=True,
        )
        result = RefundBatchResult()
        for task, outcome in zip(tasks, settled):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                reason = getattr(outcome, "message", None) or str(outcome)
                result.errors.append(RefundFailure(task=task, reason=reason))
            else:
                result.refund_ids.append(outcome)
        self._log(
            "yookassa_refunds_created",
            order_id=params.order_id,
            created=len(result.refund_ids),
            failed=len(result.errors),
        )
        return result

    # ---- webhook ----

    def _client_ip(self, request: WebhookRequest) -> str:
        candidate = None
        if self._webhook.trust_forwarded_for:
            forwarded = request.header("x-forwarded-for")
            if forwarded:
                candidate = forwarded.split(",")[0]
        ip = (candidate or request.client_host or "").strip()
        # IPv4-mapped IPv6 (::ffff:1.2.3.4)
        if ip.startswith("::ffff:") and "." in ip:
            ip = ip[len("::ffff:"):]
        return ip

    def verify_webhook_authenticity(self, request: WebhookRequest) -> bool:
        ip = self._client_ip(request)
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            logger.warning("yookassa_webhook_bad_ip", ip=ip)
            return False
        allowed = any(addr.version == net.version and addr in net for net in self._networks)
        if not allowed:
            logger.warning("yookassa_webhook_ip_not_allowed", ip=ip)
        return allowed

    def normalize_webhook(self, payload: dict[str, Any]) -> Optional[CanonicalTransaction]:
        event = payload.get("event")
        obj = payload.get("object")
        if payload.get("type") != "notification" or not isinstance(event, str) or not isinstance(obj, dict):
            return None
        kind, _, status = event.partition(".")
        if kind not in {"payment", "refund"}:
            return None

        finished, failed = self._map_status(status)
        is_refund = kind == "refund"
        metadata = obj.get("metadata") or {}
        return CanonicalTransaction(
            provider=self.provider,
            transaction_type=TransactionType.REFUND if is_refund else TransactionType.PAYMENT,
            transaction_id=obj.get("id"),
            original_payment_id=obj.get("payment_id") if is_refund else None,
            amount=_amount((obj.get("amount") or {}).get("value")),
            finished=finished,
            mark_as_failed=failed,
            order_id=metadata.get("order_id"),
            raw_status=status,
        )

    # ---- reconciliation ----

    async def _list_all(self, path: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            data = await self._request("GET", path, params=page_params)
            items.extend(data.get("items") or [])
            cursor = data.get("next_cursor")
            if not cursor:
                return items

    async def fetch_external(self, stuck: list[StuckTransactionRef]) -> list[dict[str, Any]]:
        if not stuck:
            return []
        since = min(ref.started_at for ref in stuck)
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        params = {
            "created_at.gte": since.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            "limit": self._cfg.page_limit,
        }
        types = {ref.transaction_type for ref in stuck}

        async def listing(tx_type: TransactionType) -> list[dict[str, Any]]:
            if tx_type not in types:
                return []
            path = "/payments" if tx_type == TransactionType.PAYMENT else "/refunds"
            rows = await self._list_all(path, params)
            return [{**row, "_transaction_type": tx_type.value} for row in rows]

        payments, refunds = await asyncio.gather(
            listing(TransactionType.PAYMENT),
            listing(TransactionType.REFUND),
        )
        self._log(
            "yookassa_external_fetched",
            since=params["created_at.gte"],
            payments=len(payments),
            refunds=len(refunds),
        )
        return [*payments, *refunds]

    def normalize_external(self, raw: dict[str, Any]) -> CanonicalTransaction:
        tx_type = TransactionType(raw.get("_transaction_type", TransactionType.PAYMENT.value))
        status = raw.get("status")
        finished, failed = self._map_status(status)
        metadata = raw.get("metadata") or {}
        confirmation = raw.get("confirmation") or {}
        return CanonicalTransaction(
            provider=self.provider,
            transaction_type=tx_type,
            transaction_id=raw.get("id"),
            original_payment_id=raw.get("payment_id") if tx_type == TransactionType.REFUND else None,
            amount=_amount((raw.get("amount") or {}).get("value")),
            finished=finished,
            mark_as_failed=failed,
            confirmation_url=confirmation.get("confirmation_url"),
            order_id=metadata.get("order_id"),
            raw_status=status,
        )
