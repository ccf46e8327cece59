"""
订单领域实体 - 订单聚合根与支付状态机
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException, InvalidOrderStateException


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"           # 待支付
    PROCESSING = "processing"     # 已发起 STK Push，等待回调
    PAID = "paid"                 # 支付成功
    FAILED = "failed"             # 支付失败
    CANCELLED = "cancelled"       # 已取消


# 唯一的状态转换表；所有写入方（发起支付、回调、清理任务、用户取消）都经过它
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.PAID, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED})

# 重复回调会再次请求同一终态，视为无副作用
IDEMPOTENT_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED})


def ensure_transition(
    current: OrderStatus,
    target: OrderStatus,
    *,
    order_id: Optional[str] = None,
) -> bool:
    """
    校验状态转换

    Returns:
        True 表示需要写入；False 表示重复请求同一终态（幂等无操作）

    Raises:
        InvalidOrderStateException: 转换不在状态表中
    """
    if current == target and target in IDEMPOTENT_STATUSES:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidOrderStateException(order_id, current.value, target.value)
    return True


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class OrderItem:
    product_id: str
    quantity: int
    price: Decimal

    def __post_init__(self):
        if self.quantity <= 0:
            raise DomainValidationException(f"商品数量必须大于0: {self.quantity}", field="quantity")
        if self.price < 0:
            raise DomainValidationException(f"商品单价不能为负: {self.price}", field="price")

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. 金额必须大于0
    2. 状态只能沿 pending → processing → {paid | failed} 或 pending → cancelled 前进
    3. mpesa_checkout_request_id 在发起支付被渠道受理后才有值
    4. mpesa_code（收据号）仅在支付成功时写入
    """

    id: Optional[str]
    user_id: str
    branch: str
    total: Decimal
    status: OrderStatus = OrderStatus.PENDING
    items: list[OrderItem] = field(default_factory=list)
    delivery_address: Optional[str] = None
    delivery_location: Optional[dict] = None
    mpesa_checkout_request_id: Optional[str] = None
    mpesa_code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.total <= 0:
            raise DomainValidationException(f"订单金额必须大于0: {self.total}", field="total")
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @classmethod
    def place(
        cls,
        *,
        user_id: str,
        branch: str,
        items: list[OrderItem],
        delivery_address: Optional[str] = None,
        delivery_location: Optional[dict] = None,
    ) -> "Order":
        """结算下单：金额由明细汇总，初始状态为 pending"""
        if not items:
            raise DomainValidationException("订单至少需要一个商品", field="items")
        now = datetime.now(timezone.utc)
        return cls(
            id=None,
            user_id=user_id,
            branch=branch,
            total=sum((item.subtotal for item in items), Decimal("0")),
            items=items,
            delivery_address=delivery_address,
            delivery_location=delivery_location,
            created_at=now,
            updated_at=now,
        )

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    def _move_to(self, target: OrderStatus) -> bool:
        changed = ensure_transition(self.status, target, order_id=self.id)
        if changed:
            self.status = target
            self.updated_at = datetime.now(timezone.utc)
        return changed

    def mark_processing(self, checkout_request_id: str) -> None:
        """渠道受理 STK Push：记录关联ID并进入 processing"""
        self._move_to(OrderStatus.PROCESSING)
        self.mpesa_checkout_request_id = checkout_request_id

    def mark_paid(self, receipt: Optional[str]) -> bool:
        """回调成功；重复回调返回 False"""
        changed = self._move_to(OrderStatus.PAID)
        if changed:
            self.mpesa_code = receipt
            self.failure_reason = None
        return changed

    def mark_failed(self, reason: Optional[str] = None) -> bool:
        """回调失败；重复回调返回 False"""
        changed = self._move_to(OrderStatus.FAILED)
        if changed:
            self.failure_reason = reason
        return changed

    def cancel(self) -> None:
        """取消订单（用户自助取消或清理任务），仅允许 pending"""
        self._move_to(OrderStatus.CANCELLED)


@dataclass
class PaymentAttempt:
    """
    一次 STK Push 与订单的关联记录

    同一订单再次发起支付时，旧记录被标记 superseded_at；
    旧关联ID的迟到回调只能用于归因与日志，不再改变订单状态。
    """

    id: Optional[int]
    order_id: str
    checkout_request_id: str
    merchant_request_id: Optional[str]
    phone: str
    amount: int
    initiated_at: Optional[datetime] = None
    superseded_at: Optional[datetime] = None

    def __post_init__(self):
        self.initiated_at = _ensure_utc(self.initiated_at)
        self.superseded_at = _ensure_utc(self.superseded_at)

    @property
    def is_superseded(self) -> bool:
        return self.superseded_at is not None
