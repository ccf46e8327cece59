"""
订单数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
import uuid

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """
    订单数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有状态转换规则都在 domain.order.entity 中
    """
    __tablename__ = "orders"

    # 主键
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), comment="订单ID")

    # 归属信息
    user_id = Column(String(64), nullable=False, index=True, comment="下单用户ID")
    branch = Column(String(100), nullable=False, index=True, comment="履约门店")

    # 明细与金额
    items = Column(JSON, nullable=False, default=list, comment="订单明细 [{product_id, quantity, price}]")
    total = Column(Numeric(precision=12, scale=2), nullable=False, comment="订单总额")

    # 配送信息
    delivery_address = Column(Text, nullable=True, comment="配送地址")
    delivery_location = Column(JSON, nullable=True, comment="配送坐标 {lat, lng}")

    # 状态
    status = Column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="订单状态: pending/processing/paid/failed/cancelled"
    )

    # M-Pesa 字段
    mpesa_checkout_request_id = Column(String(100), nullable=True, index=True, comment="当前 STK Push 的 CheckoutRequestID")
    mpesa_code = Column(String(50), nullable=True, comment="M-Pesa 收据号")
    failure_reason = Column(Text, nullable=True, comment="支付失败原因")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    # 关系
    payment_attempts = relationship("PaymentAttemptModel", back_populates="order", lazy="select")

    # 索引
    __table_args__ = (
        Index("ix_orders_status_created_at", "status", "created_at"),
        Index("ix_orders_user_created_at", "user_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<OrderModel(id='{self.id}', user_id='{self.user_id}', "
            f"total={self.total}, status='{self.status}')>"
        )


class PaymentAttemptModel(Base):
    """
    支付尝试数据库模型

    每次被渠道受理的 STK Push 一条记录，用于迟到回调的归因
    """
    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)

    order_id = Column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联订单ID"
    )
    checkout_request_id = Column(String(100), nullable=False, unique=True, comment="CheckoutRequestID")
    merchant_request_id = Column(String(100), nullable=True, comment="MerchantRequestID")
    phone = Column(String(20), nullable=False, comment="付款手机号（渠道格式）")
    amount = Column(Integer, nullable=False, comment="提交给渠道的整数金额")

    initiated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="发起时间"
    )
    superseded_at = Column(DateTime(timezone=True), nullable=True, comment="被新的尝试替代的时间")

    order = relationship("OrderModel", back_populates="payment_attempts")

    def __repr__(self):
        return (
            f"<PaymentAttemptModel(id={self.id}, order_id='{self.order_id}', "
            f"checkout_request_id='{self.checkout_request_id}')>"
        )
