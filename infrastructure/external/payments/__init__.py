"""
Factory for the payment provider registry.
"""
from __future__ import annotations

from application.ports.payment_provider import ProviderRegistry
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings


logger = get_logger(__name__)


def build_provider_registry(cfg: PaymentSettings | None = None) -> ProviderRegistry:
    """Register every provider with credentials; unconfigured ones are left out."""
    cfg = cfg or payment_settings
    registry = ProviderRegistry()
    if cfg.yookassa.shop_id and cfg.yookassa.secret_key:
        from .yookassa_client import YooKassaClient
        registry.register(YooKassaClient(cfg.yookassa, cfg.webhook))
    else:
        logger.warning("payment_provider_not_configured", provider="yookassa")
    return registry
