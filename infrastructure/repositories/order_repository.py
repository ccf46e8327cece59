"""
订单仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from domain.order.entity import Order, OrderItem, OrderStatus, PaymentAttempt
from domain.order.repository import OrderRepository, PaymentAttemptRepository
from infrastructure.models.order import OrderModel, PaymentAttemptModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            user_id=model.user_id,
            branch=model.branch,
            total=Decimal(str(model.total)),
            status=OrderStatus(model.status),
            items=[
                OrderItem(
                    product_id=str(item["product_id"]),
                    quantity=int(item["quantity"]),
                    price=Decimal(str(item["price"])),
                )
                for item in (model.items or [])
            ],
            delivery_address=model.delivery_address,
            delivery_location=model.delivery_location,
            mpesa_checkout_request_id=model.mpesa_checkout_request_id,
            mpesa_code=model.mpesa_code,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        return OrderModel(
            id=entity.id,
            user_id=entity.user_id,
            branch=entity.branch,
            items=[
                {"product_id": item.product_id, "quantity": item.quantity, "price": str(item.price)}
                for item in entity.items
            ],
            total=entity.total,
            delivery_address=entity.delivery_address,
            delivery_location=entity.delivery_location,
            status=entity.status.value,
            mpesa_checkout_request_id=entity.mpesa_checkout_request_id,
            mpesa_code=entity.mpesa_code,
            failure_reason=entity.failure_reason,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def create(self, order: Order) -> Order:
        """创建订单"""
        db_order = self._to_model(order)
        self.session.add(db_order)
        await self.session.flush()
        await self.session.refresh(db_order)
        logger.info(
            "order_created",
            order_id=db_order.id,
            user_id=db_order.user_id,
            branch=db_order.branch,
            total=str(db_order.total),
        )
        return self._to_entity(db_order)

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        """根据ID获取订单"""
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.id == order_id)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def get_by_checkout_request_id(self, checkout_request_id: str) -> Optional[Order]:
        """根据 CheckoutRequestID 获取订单"""
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.mpesa_checkout_request_id == checkout_request_id)
        )
        db_order = result.scalars().first()
        return self._to_entity(db_order) if db_order else None

    async def list_by_user(self, user_id: str, skip: int = 0, limit: int = 100) -> List[Order]:
        """获取用户的订单列表"""
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.user_id == user_id)
            .order_by(OrderModel.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return [self._to_entity(o) for o in result.scalars().all()]

    async def save_transition(self, order: Order, expected_status: OrderStatus) -> bool:
        """按 id + 原状态 条件更新"""
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.id == order.id,
                OrderModel.status == expected_status.value,
            )
            .values(
                status=order.status.value,
                mpesa_checkout_request_id=order.mpesa_checkout_request_id,
                mpesa_code=order.mpesa_code,
                failure_reason=order.failure_reason,
                updated_at=order.updated_at or datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        if applied:
            logger.info(
                "order_status_updated",
                order_id=order.id,
                from_status=expected_status.value,
                to_status=order.status.value,
            )
        else:
            logger.warning(
                "order_status_update_conflict",
                order_id=order.id,
                expected_status=expected_status.value,
                to_status=order.status.value,
            )
        return applied

    async def cancel_stale_pending(self, created_before: datetime) -> List[str]:
        """批量取消过期 pending 订单；更新语句再次限定 status，避免误伤刚进入 processing 的订单"""
        result = await self.session.execute(
            select(OrderModel.id).where(
                OrderModel.status == OrderStatus.PENDING.value,
                OrderModel.created_at < created_before,
            )
        )
        candidate_ids = list(result.scalars().all())
        if not candidate_ids:
            return []

        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.id.in_(candidate_ids),
                OrderModel.status == OrderStatus.PENDING.value,
            )
            .values(
                status=OrderStatus.CANCELLED.value,
                updated_at=datetime.now(timezone.utc),
            )
            .returning(OrderModel.id)
            .execution_options(synchronize_session=False)
        )
        cancelled = list(result.scalars().all())
        logger.info(
            "stale_orders_batch_updated",
            candidates=len(candidate_ids),
            cancelled=len(cancelled),
        )
        return cancelled


class SQLAlchemyPaymentAttemptRepository(PaymentAttemptRepository):
    """支付尝试仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentAttemptModel) -> PaymentAttempt:
        return PaymentAttempt(
            id=model.id,
            order_id=model.order_id,
            checkout_request_id=model.checkout_request_id,
            merchant_request_id=model.merchant_request_id,
            phone=model.phone,
            amount=model.amount,
            initiated_at=model.initiated_at,
            superseded_at=model.superseded_at,
        )

    async def add(self, attempt: PaymentAttempt) -> PaymentAttempt:
        db_attempt = PaymentAttemptModel(
            order_id=attempt.order_id,
            checkout_request_id=attempt.checkout_request_id,
            merchant_request_id=attempt.merchant_request_id,
            phone=attempt.phone,
            amount=attempt.amount,
            initiated_at=attempt.initiated_at,
        )
        self.session.add(db_attempt)
        await self.session.flush()
        await self.session.refresh(db_attempt)
        return self._to_entity(db_attempt)

    async def get_by_checkout_request_id(self, checkout_request_id: str) -> Optional[PaymentAttempt]:
        result = await self.session.execute(
            select(PaymentAttemptModel).where(
                PaymentAttemptModel.checkout_request_id == checkout_request_id
            )
        )
        db_attempt = result.scalar_one_or_none()
        return self._to_entity(db_attempt) if db_attempt else None

    async def supersede_active(self, order_id: str, keep_checkout_request_id: str, at: datetime) -> int:
        result = await self.session.execute(
            update(PaymentAttemptModel)
            .where(
                PaymentAttemptModel.order_id == order_id,
                PaymentAttemptModel.checkout_request_id != keep_checkout_request_id,
                PaymentAttemptModel.superseded_at.is_(None),
            )
            .values(superseded_at=at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "payment_attempts_superseded",
                order_id=order_id,
                count=result.rowcount,
                current_checkout_request_id=keep_checkout_request_id,
            )
        return result.rowcount
