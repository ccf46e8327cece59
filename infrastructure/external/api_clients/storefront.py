"""
Storefront 支付 API 客户端

与网页结账流程一致：为订单发起 STK Push，然后轮询查询接口，直到支付有结果
或等待次数用尽。
"""
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from application.dtos.payments import StkQueryResult
from application.services.payment_poller import PaymentStatusPoller, PollResult
from domain.common.exceptions import PaymentNetworkError, PaymentProviderError

from .base import APIError, BaseAPIClient, ServerError

API_PREFIX = "/api/v1"


class StkPushReceipt(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    checkout_request_id: str = Field(alias="checkoutRequestId")
    merchant_request_id: Optional[str] = Field(default=None, alias="merchantRequestId")


class StorefrontClient(BaseAPIClient):
    """Storefront 后端支付接口客户端"""

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
            retry_delay=retry_delay,
            auth_token=auth_token,
            transport=transport,
        )

    async def initiate_stk_push(self, order_id: str, phone: str) -> StkPushReceipt:
        # 不重试：重复提交会在用户手机上弹出第二次支付提示
        return await self.post_typed(
            f"{API_PREFIX}/payments/mpesa/stk-push",
            StkPushReceipt,
            json_data={"order_id": order_id, "phone": phone},
            retry=False,
        )

    async def query_transaction(self, checkout_request_id: str) -> dict[str, Any]:
        """后端转发的渠道原始查询结果"""
        response = await self.get(f"{API_PREFIX}/payments/mpesa/query/{checkout_request_id}")
        return (response.json() or {}).get("result") or {}

    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        try:
            raw = await self.query_transaction(checkout_request_id)
        except ServerError as exc:
            if exc.status_code == 502:
                raise PaymentProviderError(exc.message, status_code=exc.status_code) from exc
            raise PaymentNetworkError(exc.message, operation="query") from exc
        except APIError as exc:
            if exc.status_code is None:
                raise PaymentNetworkError(exc.message, operation="query") from exc
            raise
        return StkQueryResult.from_provider(checkout_request_id, raw)

    async def pay_and_wait(
        self,
        order_id: str,
        phone: str,
        *,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        poller: Optional[PaymentStatusPoller] = None,
    ) -> PollResult:
        """
        发起支付并等待终态结果；未指定的间隔和次数取 POLLER__* 配置

        Raises:
            PaymentDeclinedError: 用户拒绝或支付失败
            PaymentTimeoutError: 等待超时，订单可能仍会由回调更新
        """
        receipt = await self.initiate_stk_push(order_id, phone)
        poller = poller or PaymentStatusPoller(
            self.query_status,
            interval_seconds=interval_seconds,
            max_attempts=max_attempts,
        )
        return await poller.wait_for_result(receipt.checkout_request_id)
