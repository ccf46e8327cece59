"""
订单应用服务（application/services）- 编排订单领域服务
"""
from typing import Callable, List

from application.dtos.orders import OrderCreateDTO, OrderResponseDTO
from application.services.payment_service import publish_events
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order, OrderItem
from domain.order.service import OrderDomainService


class OrderApplicationService:
    """订单应用服务 - 下单、查询与自助取消"""

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork]):
        self._uow_factory = uow_factory

    async def create_order(self, user_id: str, data: OrderCreateDTO) -> OrderResponseDTO:
        """下单，订单初始状态为 pending"""
        async with self._uow_factory() as uow:
            domain_service = OrderDomainService(uow.order_repository)
            order = await domain_service.place_order(
                user_id=user_id,
                branch=data.branch,
                items=[
                    OrderItem(product_id=i.product_id, quantity=i.quantity, price=i.price)
                    for i in data.items
                ],
                delivery_address=data.delivery_address,
                delivery_location=data.delivery_location.model_dump() if data.delivery_location else None,
            )
            return self._to_response_dto(order)

    async def list_orders(self, user_id: str, skip: int = 0, limit: int = 100) -> List[OrderResponseDTO]:
        """获取用户订单（按时间倒序）"""
        async with self._uow_factory(readonly=True) as uow:
            orders = await uow.order_repository.list_by_user(user_id, skip, limit)
            return [self._to_response_dto(o) for o in orders]

    async def get_order(self, order_id: str, user_id: str, *, is_admin: bool = False) -> OrderResponseDTO:
        """获取订单；非所有者视为不存在"""
        async with self._uow_factory(readonly=True) as uow:
            domain_service = OrderDomainService(uow.order_repository)
            order = await domain_service.get_owned_order(order_id, user_id, allow_admin=is_admin)
            return self._to_response_dto(order)

    async def cancel_order(self, order_id: str, user_id: str) -> OrderResponseDTO:
        """用户自助取消（仅 pending）"""
        async with self._uow_factory() as uow:
            domain_service = OrderDomainService(uow.order_repository)
            order = await domain_service.cancel_order(order_id, user_id)
            events = domain_service.clear_events()
        publish_events(events)
        return self._to_response_dto(order)

    def _to_response_dto(self, order: Order) -> OrderResponseDTO:
        """转换为响应DTO"""
        return OrderResponseDTO(
            id=order.id,
            user_id=order.user_id,
            branch=order.branch,
            items=[
                {"product_id": i.product_id, "quantity": i.quantity, "price": i.price}
                for i in order.items
            ],
            total=order.total,
            status=order.status.value,
            delivery_address=order.delivery_address,
            delivery_location=order.delivery_location,
            mpesa_checkout_request_id=order.mpesa_checkout_request_id,
            mpesa_code=order.mpesa_code,
            failure_reason=order.failure_reason,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
