"""
订单仓储接口 - 定义订单数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import Order, OrderStatus, PaymentAttempt


class OrderRepository(ABC):
    """订单仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """创建订单"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        """根据ID获取订单"""
        pass

    @abstractmethod
    async def get_by_checkout_request_id(self, checkout_request_id: str) -> Optional[Order]:
        """根据当前存储的 M-Pesa CheckoutRequestID 获取订单"""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str, skip: int = 0, limit: int = 100) -> List[Order]:
        """获取用户的订单列表（按创建时间倒序）"""
        pass

    @abstractmethod
    async def save_transition(self, order: Order, expected_status: OrderStatus) -> bool:
        """
        条件更新：仅当库中状态仍为 expected_status 时写入订单的新状态及支付字段

        Returns:
            是否写入成功（False 表示已被其他写入方抢先修改）
        """
        pass

    @abstractmethod
    async def cancel_stale_pending(self, created_before: datetime) -> List[str]:
        """
        批量取消创建时间早于 created_before 的 pending 订单

        Returns:
            实际被取消的订单ID列表
        """
        pass


class PaymentAttemptRepository(ABC):
    """支付尝试仓储抽象接口"""

    @abstractmethod
    async def add(self, attempt: PaymentAttempt) -> PaymentAttempt:
        """记录一次被渠道受理的 STK Push"""
        pass

    @abstractmethod
    async def get_by_checkout_request_id(self, checkout_request_id: str) -> Optional[PaymentAttempt]:
        """根据 CheckoutRequestID 获取支付尝试"""
        pass

    @abstractmethod
    async def supersede_active(self, order_id: str, keep_checkout_request_id: str, at: datetime) -> int:
        """将订单其余未被替代的尝试标记为已替代，返回受影响数量"""
        pass
