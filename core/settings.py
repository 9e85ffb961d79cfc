"""
Payment provider settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so provider credentials can be
rotated without touching the ledger configuration.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    # Extra IPs/CIDRs accepted on top of the provider's published ranges
    ip_allowlist: list[str] | None = None
    trust_forwarded_for: bool = True


class YooKassaSettings(BaseModel):
    shop_id: Optional[str] = None
    secret_key: Optional[str] = None
    base_url: str = "https://api.yookassa.ru/v3"
    return_url: Optional[str] = None
    page_limit: int = 100


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    yookassa: YooKassaSettings = Field(default_factory=YooKassaSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
