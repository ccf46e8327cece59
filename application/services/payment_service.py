"""
M-Pesa 支付应用服务（application/services）

只依赖 MpesaGateway 端口、Unit of Work 抽象与 DTO；网关实现由基础设施层
提供，在组合根（API/任务）注入。

订单写入：
- 发起：渠道受理 STK Push 后 ``pending -> processing``
- 回调：``processing -> paid | failed``，是进入支付终态的唯一路径
"""
from __future__ import annotations

from typing import Any, Callable, Iterable

from pydantic import ValidationError

from application.dtos.payments import (
    MpesaCallback,
    StkPushRequest,
    StkPushResponse,
    StkQueryResult,
)
from application.ports.payment_gateway import MpesaGateway
from core.logging_config import get_logger
from domain.common.exceptions import InvalidOrderStateException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import OrderStatus
from domain.order.service import OrderDomainService
from shared.codes.payment_codes import MPESA_CALLBACK_ACCEPTED, MPESA_CALLBACK_FAILED


logger = get_logger(__name__)


def publish_events(events: Iterable) -> None:
    """领域事件目前仅记录日志"""
    for event in events:
        logger.info(
            "order_event",
            event_name=event.name,
            event_id=event.event_id,
            order_id=event.order_id,
            checkout_request_id=event.checkout_request_id,
        )


class PaymentApplicationService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: MpesaGateway,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway

    async def initiate_stk_push(self, req: StkPushRequest, *, user_id: str) -> StkPushResponse:
        """为调用者的 pending 订单发起 STK Push"""
        async with self._uow_factory(readonly=True) as uow:
            domain_service = OrderDomainService(uow.order_repository)
            order = await domain_service.get_owned_order(req.order_id, user_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidOrderStateException(
                    order.id,
                    order.status.value,
                    OrderStatus.PROCESSING.value,
                    message="Order is not pending payment",
                )

        logger.info("stk_push_request", order_id=order.id, user_id=user_id, total=str(order.total))
        result = await self.gateway.initiate_push(
            phone=req.phone,
            amount=order.total,
            order_id=order.id,
            reference=f"ORDER-{order.id[:8]}",
        )

        # 在返回前写入关联ID，保证紧随其后的回调能匹配到订单
        try:
            async with self._uow_factory() as uow:
                domain_service = OrderDomainService(uow.order_repository, uow.payment_attempt_repository)
                await domain_service.start_payment(
                    order.id,
                    checkout_request_id=result.checkout_request_id,
                    merchant_request_id=result.merchant_request_id,
                    phone=result.phone,
                    amount=result.amount,
                )
                events = domain_service.clear_events()
        except InvalidOrderStateException:
            # 渠道已受理但订单在此期间被取消；该 STK Push 的回调将找不到订单
            logger.warning(
                "stk_push_order_changed",
                order_id=order.id,
                checkout_request_id=result.checkout_request_id,
            )
            raise

        publish_events(events)
        logger.info(
            "stk_push_initiated",
            order_id=order.id,
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            amount=result.amount,
        )
        return StkPushResponse(
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
        )

    async def handle_callback(self, payload: Any) -> dict:
        """
        处理渠道回调，始终返回渠道要求的确认结构

        未知关联ID、重复回调、状态冲突都返回 Accepted，避免渠道重试；
        只有内部异常返回 Failed（HTTP 状态依旧是 200）。
        """
        try:
            callback = MpesaCallback.model_validate(payload)
        except ValidationError as exc:
            logger.error("mpesa_callback_malformed", errors=exc.error_count())
            return dict(MPESA_CALLBACK_FAILED)

        stk = callback.stk
        log = logger.bind(
            checkout_request_id=stk.checkout_request_id,
            result_code=stk.result_code,
        )
        log.info("mpesa_callback_received", result_desc=stk.result_desc)

        try:
            async with self._uow_factory() as uow:
                order = await uow.order_repository.get_by_checkout_request_id(stk.checkout_request_id)
                if order is None:
                    attempt = await uow.payment_attempt_repository.get_by_checkout_request_id(
                        stk.checkout_request_id
                    )
                    if attempt is not None:
                        log.warning(
                            "mpesa_callback_superseded_attempt",
                            order_id=attempt.order_id,
                            superseded_at=attempt.superseded_at.isoformat() if attempt.superseded_at else None,
                            receipt=stk.receipt,
                        )
                    else:
                        log.warning("mpesa_callback_order_not_found")
                    return dict(MPESA_CALLBACK_ACCEPTED)

                domain_service = OrderDomainService(uow.order_repository, uow.payment_attempt_repository)
                changed = await domain_service.settle_payment(
                    order,
                    succeeded=stk.succeeded,
                    receipt=stk.receipt,
                    reason=None if stk.succeeded else stk.result_desc,
                )
                events = domain_service.clear_events()

            if changed:
                publish_events(events)
                log.info("mpesa_callback_applied", order_id=order.id, status=order.status.value)
            else:
                log.info("mpesa_callback_duplicate", order_id=order.id, status=order.status.value)
        except InvalidOrderStateException as exc:
            log.warning("mpesa_callback_conflict", details=exc.details)
            return dict(MPESA_CALLBACK_ACCEPTED)
        except Exception:
            log.exception("mpesa_callback_failed")
            return dict(MPESA_CALLBACK_FAILED)

        return dict(MPESA_CALLBACK_ACCEPTED)

    async def query_status(self, checkout_request_id: str) -> StkQueryResult:
        """向渠道查询交易状态（只读，不写订单）"""
        logger.info("stk_query_request", checkout_request_id=checkout_request_id)
        return await self.gateway.query_status(checkout_request_id)
