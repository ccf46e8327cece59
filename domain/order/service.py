"""
订单领域服务 - 处理订单支付生命周期中的业务规则
"""
from datetime import datetime, timezone
from typing import List, Optional

from .entity import Order, OrderItem, OrderStatus, PaymentAttempt
from .events import OrderCancelled, OrderPaid, OrderPaymentFailed, PaymentInitiated
from .repository import OrderRepository, PaymentAttemptRepository
from domain.common.exceptions import InvalidOrderStateException, OrderNotFoundException


class OrderDomainService:
    """
    订单领域服务 - 编排订单状态写入

    职责：
    1. 所有状态写入都先经过实体状态机，再以条件更新落库
    2. 条件更新失败说明存在并发写入方，不覆盖对方结果
    3. 产生领域事件
    """

    def __init__(
        self,
        order_repository: OrderRepository,
        payment_attempt_repository: Optional[PaymentAttemptRepository] = None,
    ):
        self.order_repository = order_repository
        self.payment_attempt_repository = payment_attempt_repository
        self.events: List = []  # 领域事件收集

    async def place_order(
        self,
        *,
        user_id: str,
        branch: str,
        items: list[OrderItem],
        delivery_address: Optional[str] = None,
        delivery_location: Optional[dict] = None,
    ) -> Order:
        order = Order.place(
            user_id=user_id,
            branch=branch,
            items=items,
            delivery_address=delivery_address,
            delivery_location=delivery_location,
        )
        return await self.order_repository.create(order)

    async def get_owned_order(self, order_id: str, user_id: str, *, allow_admin: bool = False) -> Order:
        """
        获取属于 user_id 的订单

        业务规则：非所有者与不存在一样返回 NotFound，不暴露订单是否存在
        """
        order = await self.order_repository.get_by_id(order_id)
        if not order or (not allow_admin and not order.is_owned_by(user_id)):
            raise OrderNotFoundException(order_id)
        return order

    async def _persist(self, order: Order, expected: OrderStatus) -> None:
        if not await self.order_repository.save_transition(order, expected):
            current = await self.order_repository.get_by_id(order.id)
            raise InvalidOrderStateException(
                order.id,
                current.status.value if current else expected.value,
                order.status.value,
                message="Order was modified concurrently",
            )

    async def start_payment(
        self,
        order_id: str,
        *,
        checkout_request_id: str,
        merchant_request_id: Optional[str],
        phone: str,
        amount: int,
    ) -> Order:
        """
        渠道已受理 STK Push：pending → processing，并记录支付尝试

        业务规则：
        1. 订单必须仍为 pending（期间可能已被清理任务取消）
        2. 新的关联ID替代该订单之前的关联ID
        """
        order = await self.order_repository.get_by_id(order_id)
        if not order:
            raise OrderNotFoundException(order_id)

        expected = order.status
        order.mark_processing(checkout_request_id)
        await self._persist(order, expected)

        if self.payment_attempt_repository is not None:
            now = datetime.now(timezone.utc)
            await self.payment_attempt_repository.add(PaymentAttempt(
                id=None,
                order_id=order.id,
                checkout_request_id=checkout_request_id,
                merchant_request_id=merchant_request_id,
                phone=phone,
                amount=amount,
                initiated_at=now,
            ))
            await self.payment_attempt_repository.supersede_active(order.id, checkout_request_id, now)

        self.events.append(PaymentInitiated(
            order_id=order.id,
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
        ))
        return order

    async def settle_payment(
        self,
        order: Order,
        *,
        succeeded: bool,
        receipt: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        根据渠道终态结果结算订单：processing → paid / failed

        Returns:
            True 表示本次写入了新状态；False 表示重复通知（订单已处于同一终态）
        """
        expected = order.status
        changed = order.mark_paid(receipt) if succeeded else order.mark_failed(reason)
        if not changed:
            return False

        if not await self.order_repository.save_transition(order, expected):
            # 并发写入方可能已写入同一终态，视为重复通知
            current = await self.order_repository.get_by_id(order.id)
            if current is not None and current.status == order.status:
                return False
            raise InvalidOrderStateException(
                order.id,
                current.status.value if current else expected.value,
                order.status.value,
                message="Order was modified concurrently",
            )

        if succeeded:
            self.events.append(OrderPaid(
                order_id=order.id,
                checkout_request_id=order.mpesa_checkout_request_id,
                receipt=receipt,
            ))
        else:
            self.events.append(OrderPaymentFailed(
                order_id=order.id,
                checkout_request_id=order.mpesa_checkout_request_id,
                reason=reason,
            ))
        return True

    async def cancel_order(self, order_id: str, user_id: str) -> Order:
        """用户自助取消（仅 pending）"""
        order = await self.get_owned_order(order_id, user_id)
        expected = order.status
        order.cancel()
        await self._persist(order, expected)
        self.events.append(OrderCancelled(order_id=order.id, by="user"))
        return order

    async def cancel_stale_pending(self, created_before: datetime) -> List[str]:
        """批量取消过期未支付订单（仅 pending）"""
        cancelled = await self.order_repository.cancel_stale_pending(created_before)
        self.events.extend(OrderCancelled(order_id=oid, by="reaper") for oid in cancelled)
        return cancelled

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
