"""
Payment provider port (application/ports) and its typed registry.

Application services depend on this Protocol; infrastructure supplies one
adapter per gateway. Provider identity is the OnlineProvider enum, never a
free-form string.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CanonicalTransaction,
    PaymentCreation,
    PaymentParams,
    RefundBatchResult,
    RefundParams,
    RefundTask,
    StuckTransactionRef,
    WebhookRequest,
)
from domain.common.exceptions import BusinessException
from domain.order.entity import OnlineProvider
from shared.codes.ledger_codes import LedgerCode
from shared.codes.payment_codes import PaymentCode


@runtime_checkable
class ProviderAdapter(Protocol):
    """Gateway integration contract.

    create_* calls report provider-side failures in their result objects;
    transport failures may still raise.
    """

    provider: OnlineProvider

    async def create_payment(self, params: PaymentParams) -> PaymentCreation: ...

    async def create_refund(self, tasks: list[RefundTask], params: RefundParams) -> RefundBatchResult: ...

    def verify_webhook_authenticity(self, request: WebhookRequest) -> bool: ...

    def normalize_webhook(self, payload: dict[str, Any]) -> Optional[CanonicalTransaction]: ...

    async def fetch_external(self, stuck: list[StuckTransactionRef]) -> list[dict[str, Any]]: ...

    def normalize_external(self, raw: dict[str, Any]) -> CanonicalTransaction: ...

    async def aclose(self) -> None: ...


class ProviderNotConfiguredException(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=LedgerCode.PROVIDER_NOT_CONFIGURED,
            message=f"Payment provider is not configured: {provider}",
            error_type="ProviderNotConfigured",
            details={"provider": provider},
            field="provider",
        )


class ProviderRegistry:
    """OnlineProvider -> ProviderAdapter"""

    def __init__(self, adapters: Iterable[ProviderAdapter] = ()) -> None:
        self._adapters: dict[OnlineProvider, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[OnlineProvider(adapter.provider)] = adapter

    def get(self, provider: OnlineProvider | str) -> ProviderAdapter:
        try:
            key = OnlineProvider(provider)
        except ValueError:
            raise ProviderNotConfiguredException(str(provider)) from None
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ProviderNotConfiguredException(key.value)
        return adapter

    def __contains__(self, provider: object) -> bool:
        return provider in self._adapters

    @property
    def providers(self) -> tuple[OnlineProvider, ...]:
        return tuple(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


class OnlinePaymentCreationFailedException(BusinessException):
    def __init__(self, message: str, *, provider: str):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="OnlinePaymentCreationFailed",
            details={"provider": provider},
        )


__all__ = [
    "ProviderAdapter",
    "ProviderRegistry",
    "ProviderNotConfiguredException",
    "OnlinePaymentCreationFailedException",
]
