"""
配置文件 - 项目配置管理
"""
from decimal import Decimal
import json
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseModel):
    url: Optional[str] = None
    max_connections: int = 10
    namespace: str = "order-ledger"


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./order_ledger.db"
    echo: bool = False


class LedgerSettings(BaseModel):
    """账本规则参数"""
    min_order_amount: Decimal = Decimal("1000")
    currency_eps: Decimal = Decimal("0.01")
    currency: str = "RUB"


class ReconciliationSettings(BaseModel):
    """卡单对账任务参数"""
    enabled: bool = True
    expiration_seconds: int = 30 * 60
    # 为空时与过期窗口一致
    interval_seconds: Optional[int] = None
    lookback_margin_seconds: int = 60
    lock_timeout_seconds: int = 10 * 60

    @property
    def effective_interval(self) -> int:
        return self.interval_seconds or self.expiration_seconds


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Order Ledger")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=True)
    ENVIRONMENT: str = Field(default="development")

    # 分组配置：嵌套模型，环境变量以 __ 分隔，例如 LEDGER__MIN_ORDER_AMOUNT
    redis: RedisSettings = Field(default_factory=RedisSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)

    # 订单更新推送：auto -> redis(if url) else inmemory
    FANOUT_BACKEND: str = Field(default="auto")

    # 请求截止时间（秒），超时后事务内的后续步骤直接放弃
    REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0)

    # CORS配置
    CORS_ORIGINS: list = Field(default=["http://localhost:3000", "http://localhost:8000"])

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _validate_ledger(self):
        if self.ledger.currency_eps <= 0:
            raise ValueError("LEDGER__CURRENCY_EPS must be positive")
        if self.reconciliation.expiration_seconds <= 0:
            raise ValueError("RECONCILIATION__EXPIRATION_SECONDS must be positive")
        return self

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                return json.loads(s)
            return [item.strip() for item in s.split(",") if item.strip()]
        return v


settings = Settings()
