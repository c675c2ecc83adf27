"""
Payment gateway settings using pydantic-settings v2 with nested env keys.

Every adapter receives its own section at construction time, e.g.
``PAYMENT__CARD__SECRET_KEY`` or ``PAYMENT__WALLET__MODE=live``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class _GatewaySettings(BaseModel):
    currencies: list[str] = Field(default_factory=list)

    @field_validator("currencies")
    @classmethod
    def _upper(cls, v: list[str]) -> list[str]:
        return [c.strip().upper() for c in v if c and c.strip()]


class CardProcessorSettings(_GatewaySettings):
    """Stripe"""
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_version: str = "2023-10-16"
    capture_method: str = "automatic"  # automatic | manual
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "LKR"])


class WalletProcessorSettings(_GatewaySettings):
    """PayPal REST (Orders v2)"""
    mode: str = "sandbox"  # sandbox | live
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    return_url: str = "http://localhost:3000/payment/success"
    cancel_url: str = "http://localhost:3000/payment/cancel"
    brand_name: str = "Order Payments"
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR"])

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class HashProcessorSettings(_GatewaySettings):
    """PayHere checkout"""
    merchant_id: Optional[str] = None
    merchant_secret: Optional[str] = None
    mode: str = "sandbox"  # sandbox | live
    return_url: str = "http://localhost:3000/payment/success"
    cancel_url: str = "http://localhost:3000/payment/cancel"
    notify_url: str = "http://localhost:8000/api/v1/webhooks/hash-processor"
    currencies: list[str] = Field(default_factory=lambda: ["LKR", "USD"])

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://www.payhere.lk"
        return "https://sandbox.payhere.lk"


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    # 24-hex document ids issued by the order service
    order_id_pattern: str = r"^[0-9a-fA-F]{24}$"
    # processing payments untouched this long are re-polled by the sweep task
    stale_after_seconds: int = 1800
    sweep_batch_size: int = 100
    sweep_interval_seconds: int = 600

    card: CardProcessorSettings = Field(default_factory=CardProcessorSettings)
    wallet: WalletProcessorSettings = Field(default_factory=WalletProcessorSettings)
    hash: HashProcessorSettings = Field(default_factory=HashProcessorSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
