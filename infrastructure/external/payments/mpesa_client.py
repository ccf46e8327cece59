"""
M-Pesa Daraja (STK push) adapter using httpx.

Notes on the provider API:
- OAuth token: GET /oauth/v1/generate?grant_type=client_credentials with HTTP
  Basic auth (consumer key/secret); ``expires_in`` is a string of seconds.
- STK push / query: POST JSON with ``Password = base64(shortcode + passkey + timestamp)``
  and ``Timestamp = YYYYMMDDHHMMSS``.
- The query endpoint answers HTTP 500 with ``errorCode = 500.001.1001`` while
  the payer has not acted on the prompt yet.
"""
from __future__ import annotations

import asyncio
import base64
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Callable, Optional, Union
from zoneinfo import ZoneInfo

import httpx

from application.dtos.payments import StkPushResult, StkQueryResult
from core.logging_config import get_logger
from core.settings import MpesaSettings, PaymentSettings
from domain.common.exceptions import (
    DomainValidationException,
    PaymentCredentialError,
    PaymentProviderError,
)
from infrastructure.external.payments.base import BasePaymentClient, CONNECT_ERRORS
from shared.codes.payment_codes import (
    MPESA_QUERY_IN_PROGRESS_CODES,
    MPESA_STK_PUSH_PATH,
    MPESA_STK_QUERY_PATH,
    MPESA_TOKEN_PATH,
    MPESA_TRANSACTION_TYPE,
)


logger = get_logger(__name__)

TOKEN_EXPIRY_SKEW = timedelta(seconds=60)
DEFAULT_TOKEN_TTL = 3599


@dataclass
class AccessToken:
    value: str
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at - TOKEN_EXPIRY_SKEW


class MpesaClient(BasePaymentClient):
    provider = "mpesa"

    def __init__(
        self,
        config: MpesaSettings,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config.ensure_complete()
        super().__init__(
            base_url=self._config.base_url,
            timeouts=timeouts,
            retry=retry,
            transport=transport,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._token: Optional[AccessToken] = None
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: PaymentSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "MpesaClient":
        return cls(
            settings.mpesa,
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
            transport=transport,
        )

    # ---- request helpers ----

    def normalize_phone(self, phone: str) -> str:
        """转换为渠道要求的国际格式（不带 +），如 0712345678 -> 254712345678"""
        value = re.sub(r"[\s\-()]", "", phone or "")
        if value.startswith("+"):
            value = value[1:]
        elif value.startswith("0"):
            value = self._config.country_code + value[1:]
        if not value.isdigit() or not 10 <= len(value) <= 15:
            raise DomainValidationException("Invalid phone number", field="phone")
        return value

    @staticmethod
    def whole_units(amount: Union[Decimal, int, float]) -> int:
        """渠道不接受小数金额，向下取整"""
        whole = int(Decimal(str(amount)).to_integral_value(rounding=ROUND_FLOOR))
        if whole < 1:
            raise DomainValidationException("Amount must be at least 1", field="amount")
        return whole

    def timestamp(self) -> str:
        tz_name = self._config.timestamp_timezone
        tz = timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)
        return self._clock().astimezone(tz).strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        raw = f"{self._config.shortcode}{self._config.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    # ---- token ----

    def invalidate_token(self) -> None:
        self._token = None

    async def obtain_access_token(self, *, force_refresh: bool = False) -> str:
        async with self._token_lock:
            now = self._clock()
            if not force_refresh and self._token is not None and self._token.is_fresh(now):
                return self._token.value
            # 失败不缓存，下一次调用重新获取
            self._token = await self._fetch_token(now)
            return self._token.value

    async def _fetch_token(self, now: datetime) -> AccessToken:
        resp = await self._send(
            "GET",
            MPESA_TOKEN_PATH,
            operation="token",
            params={"grant_type": "client_credentials"},
            auth=(self._config.consumer_key, self._config.consumer_secret),
        )
        if resp.status_code in (400, 401):
            logger.error("mpesa_credentials_rejected", status_code=resp.status_code)
            raise PaymentCredentialError(status_code=resp.status_code)
        data = self._json(resp)
        if resp.status_code >= 400:
            raise self._provider_error(resp, data, operation="token")
        value = data.get("access_token")
        if not value:
            raise PaymentProviderError("M-Pesa token response missing access_token", status_code=resp.status_code)
        try:
            ttl = int(data.get("expires_in") or DEFAULT_TOKEN_TTL)
        except (TypeError, ValueError):
            ttl = DEFAULT_TOKEN_TTL
        self._log("mpesa_token_refreshed", expires_in=ttl)
        return AccessToken(value=value, expires_at=now + timedelta(seconds=ttl))

    async def _authorized_post(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        operation: str,
        retry_on: Optional[tuple[type[Exception], ...]] = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"json": payload}
        if retry_on is not None:
            kwargs["retry_on"] = retry_on

        token = await self.obtain_access_token()
        resp = await self._send("POST", path, operation=operation,
                                headers={"Authorization": f"Bearer {token}"}, **kwargs)
        if resp.status_code == 401:
            # 令牌可能在渠道侧提前失效，刷新后重试一次
            logger.warning("mpesa_token_rejected", operation=operation)
            self.invalidate_token()
            token = await self.obtain_access_token(force_refresh=True)
            resp = await self._send("POST", path, operation=operation,
                                    headers={"Authorization": f"Bearer {token}"}, **kwargs)
        return resp

    # ---- operations ----

    async def initiate_push(
        self,
        *,
        phone: str,
        amount: Union[Decimal, int, float],
        order_id: str,
        reference: Optional[str] = None,
    ) -> StkPushResult:
        msisdn = self.normalize_phone(phone)
        whole = self.whole_units(amount)
        timestamp = self.timestamp()
        payload = {
            "BusinessShortCode": self._config.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": MPESA_TRANSACTION_TYPE,
            "Amount": whole,
            "PartyA": msisdn,
            "PartyB": self._config.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self._config.callback_url,
            "AccountReference": reference or f"ORDER-{order_id[:8]}",
            "TransactionDesc": f"Payment for Order {order_id}",
        }
        resp = await self._authorized_post(
            MPESA_STK_PUSH_PATH, payload, operation="push", retry_on=CONNECT_ERRORS
        )
        data = self._json(resp)
        if resp.status_code >= 400:
            raise self._provider_error(resp, data, operation="push")

        response_code = str(data.get("ResponseCode", "")).strip()
        checkout_request_id = data.get("CheckoutRequestID")
        if response_code != "0" or not checkout_request_id:
            raise self._provider_error(resp, data, operation="push")

        self._log(
            "mpesa_stk_push_accepted",
            order_id=order_id,
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            amount=whole,
        )
        return StkPushResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
            phone=msisdn,
            amount=whole,
        )

    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        timestamp = self.timestamp()
        payload = {
            "BusinessShortCode": self._config.shortcode,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        resp = await self._authorized_post(MPESA_STK_QUERY_PATH, payload, operation="query")
        data = self._json(resp)
        if resp.status_code >= 400:
            if str(data.get("errorCode")) in MPESA_QUERY_IN_PROGRESS_CODES:
                logger.debug("mpesa_query_in_progress", checkout_request_id=checkout_request_id)
                return StkQueryResult.pending(checkout_request_id, data)
            raise self._provider_error(resp, data, operation="query")

        result = StkQueryResult.from_provider(checkout_request_id, data)
        self._log(
            "mpesa_query_completed",
            checkout_request_id=checkout_request_id,
            status=result.status,
            result_code=result.result_code,
        )
        return result
