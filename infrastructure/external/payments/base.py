"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers should subclass and implement provider-specific logic.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from domain.common.exceptions import PaymentNetworkError, PaymentProviderError


logger = get_logger(__name__)

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (httpx.TimeoutException, httpx.TransportError)
# 只在请求未送达时重试（读超时可能意味着渠道已经受理）
CONNECT_ERRORS: tuple[type[Exception], ...] = (httpx.ConnectError, httpx.ConnectTimeout)


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        base_url: str,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url
        self._timeouts_cfg = timeouts or {"token": 30.0, "query": 30.0, "push": 60.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def timeout_for(self, operation: str) -> httpx.Timeout:
        return httpx.Timeout(float(self._timeouts_cfg.get(operation, 30.0)))

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(
        self,
        fn: Callable[[], Awaitable[httpx.Response]],
        *,
        retry_on: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
    ) -> httpx.Response:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=float(self._retry_cfg["base"]), max=2.0),
            retry=retry_if_exception_type(retry_on),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        retry_on: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
        **kwargs: Any,
    ) -> httpx.Response:
        """发送请求；传输层异常统一转换为 PaymentNetworkError"""

        async def _call() -> httpx.Response:
            async with self.client() as http:
                return await http.request(method, path, timeout=self.timeout_for(operation), **kwargs)

        try:
            return await self._retry(_call, retry_on=retry_on)
        except httpx.TransportError as exc:
            logger.warning(
                "payment_provider_no_response",
                provider=self.provider,
                operation=operation,
                error=type(exc).__name__,
            )
            raise PaymentNetworkError(operation=operation) from exc

    # Helpers
    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _provider_error(self, resp: httpx.Response, data: dict[str, Any], *, operation: str) -> PaymentProviderError:
        message = data.get("errorMessage") or data.get("ResponseDescription") or f"{self.provider} {operation} failed"
        provider_code = data.get("errorCode") or data.get("ResponseCode")
        logger.warning(
            "payment_provider_error",
            provider=self.provider,
            operation=operation,
            status_code=resp.status_code,
            provider_code=provider_code,
            message=message,
        )
        return PaymentProviderError(
            str(message),
            provider_code=str(provider_code) if provider_code is not None else None,
            status_code=resp.status_code,
        )

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
