"""
客户端对账轮询（application/services）

按固定间隔查询交易状态，直到出现终态结果或次数用尽。轮询只读：订单终态
只由回调写入，因此超时或 ``stop()`` 都不会触发补偿写。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from application.dtos.payments import StkQueryResult
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import (
    PaymentDeclinedError,
    PaymentNetworkError,
    PaymentProviderError,
    PaymentTimeoutError,
)


logger = get_logger(__name__)

QueryFn = Callable[[str], Awaitable[StkQueryResult]]


class PollOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    STOPPED = "stopped"


@dataclass
class PollResult:
    outcome: PollOutcome
    checkout_request_id: str
    attempts: int
    receipt: Optional[str] = None
    result: Optional[StkQueryResult] = None


class PaymentStatusPoller:
    """每个结账会话一个轮询器；查询严格串行"""

    def __init__(
        self,
        query: QueryFn,
        *,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if interval_seconds is None:
            interval_seconds = payment_settings.poller.interval_seconds
        if max_attempts is None:
            max_attempts = payment_settings.poller.max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._query = query
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._stop_event = asyncio.Event()

    def stop(self) -> None:
        """停止轮询（如用户离开页面），不写订单"""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    async def _pause(self) -> bool:
        if self._sleep is not None:
            await self._sleep(self.interval_seconds)
        else:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        return self._stop_event.is_set()

    async def wait_for_result(self, checkout_request_id: str) -> PollResult:
        """
        先等待再查询的循环

        Raises:
            PaymentDeclinedError: 渠道返回非零结果码
            PaymentTimeoutError: 次数用尽仍无终态结果
        """
        log = logger.bind(checkout_request_id=checkout_request_id)
        for attempt in range(1, self.max_attempts + 1):
            if self.stopped or await self._pause():
                log.info("payment_poll_stopped", attempts=attempt - 1)
                return PollResult(PollOutcome.STOPPED, checkout_request_id, attempt - 1)

            try:
                result = await self._query(checkout_request_id)
            except (PaymentNetworkError, PaymentProviderError) as exc:
                # 单次查询失败不代表支付失败，继续轮询
                log.warning("payment_poll_query_failed", attempt=attempt, error_type=exc.error_type)
                continue

            if result.status == "succeeded":
                log.info("payment_poll_succeeded", attempt=attempt, receipt=result.receipt)
                return PollResult(
                    PollOutcome.SUCCEEDED,
                    checkout_request_id,
                    attempt,
                    receipt=result.receipt,
                    result=result,
                )
            if result.status == "failed":
                log.info("payment_poll_declined", attempt=attempt, result_code=result.result_code)
                raise PaymentDeclinedError(
                    result.result_desc or "Payment was not completed",
                    result_code=result.result_code,
                )
            log.debug("payment_poll_pending", attempt=attempt)

        log.warning("payment_poll_timeout", attempts=self.max_attempts)
        raise PaymentTimeoutError(checkout_request_id, self.max_attempts)
