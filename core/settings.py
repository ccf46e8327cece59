"""
Payment-related settings using pydantic-settings v2 with nested env keys.

This module is isolated so core.config.Settings stays free of provider
secrets. Env keys look like ``MPESA__CONSUMER_KEY`` or ``POLLER__MAX_ATTEMPTS``.
"""
from __future__ import annotations

from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field

from domain.common.exceptions import PaymentConfigError
from shared.codes.payment_codes import MPESA_BASE_URLS


class PaymentTimeouts(BaseModel):
    # seconds, per request kind
    token: float = 30.0
    query: float = 30.0
    push: float = 60.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post callbacks
    callback_token: Optional[str] = None  # Optional shared secret expected as ?token= on the callback URL


class PollerSettings(BaseModel):
    interval_seconds: float = 3.0
    max_attempts: int = 20


class MpesaSettings(BaseModel):
    consumer_key: Optional[str] = None
    consumer_secret: Optional[str] = None
    shortcode: Optional[str] = None
    passkey: Optional[str] = None
    callback_url: Optional[str] = None
    environment: Literal["sandbox", "production"] = "sandbox"
    country_code: str = "254"
    timestamp_timezone: str = "UTC"

    @property
    def base_url(self) -> str:
        return MPESA_BASE_URLS[self.environment]

    def missing_keys(self) -> list[str]:
        required = ("consumer_key", "consumer_secret", "shortcode", "passkey", "callback_url")
        return [name for name in required if not getattr(self, name)]

    def ensure_complete(self) -> "MpesaSettings":
        """Fail fast when any provider secret is absent."""
        missing = self.missing_keys()
        if missing:
            raise PaymentConfigError(
                "M-Pesa configuration incomplete: " + ", ".join(f"MPESA__{k.upper()}" for k in missing),
                missing=missing,
            )
        return self


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    poller: PollerSettings = Field(default_factory=PollerSettings)

    mpesa: MpesaSettings = Field(default_factory=MpesaSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
