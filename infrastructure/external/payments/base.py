"""
Base payment client implementing shared concerns: http, retry, logging, status mapping.

Concrete providers subclass and implement the ProviderAdapter operations.
"""
from __future__ import annotations

from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from domain.order.entity import OnlineProvider
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import map_provider_status


logger = get_logger(__name__)


class BasePaymentClient:
    provider: OnlineProvider

    def __init__(
        self,
        *,
        base_url: str = "",
        auth: Optional[tuple[str, str]] = None,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url
        self._auth = auth
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 3.0, "write": 3.0, "total": 5.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=self.timeouts,
                transport=self._transport,
            )
        # Keep open for reuse; explicit aclose() will close.
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """Send one API call; transport errors retry, HTTP errors map to provider exceptions."""

        async def call():
            async with self.client() as c:
                return await c.request(method, path, json=json, params=params, headers=headers)

        try:
            resp: httpx.Response = await self._retry(call)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise PaymentRecoverableError(str(exc) or type(exc).__name__, provider=self.provider.value) from exc

        if resp.status_code >= 400:
            body = _safe_json(resp)
            code = str(body.get("code") or resp.status_code)
            message = str(body.get("description") or resp.reason_phrase or "provider error")
            if resp.status_code >= 500 or resp.status_code == 429:
                raise PaymentRecoverableError(message, provider=self.provider.value, provider_code=code)
            raise PaymentProviderError(message, provider=self.provider.value, provider_code=code)
        return _safe_json(resp)

    # Helpers
    def _map_status(self, provider_status: Optional[str]) -> tuple[bool, bool]:
        return map_provider_status(self.provider.value, provider_status or "")

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider.value,
            **kwargs,
        )


def _safe_json(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
