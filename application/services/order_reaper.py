"""
过期订单清理（application/services）

取消创建时间早于阈值、且仍处于 pending 的订单。已进入 processing 及之后
状态的订单即使很旧也不处理。
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from application.services.payment_service import publish_events
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.service import OrderDomainService


logger = get_logger(__name__)


class StaleOrderReaper:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        max_age: timedelta = timedelta(minutes=10),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def sweep(self) -> List[str]:
        """执行一次清理，返回被取消的订单ID；整批在同一事务中提交"""
        cutoff = self._clock() - self.max_age
        async with self._uow_factory() as uow:
            domain_service = OrderDomainService(uow.order_repository)
            cancelled = await domain_service.cancel_stale_pending(cutoff)
            events = domain_service.clear_events()

        if cancelled:
            publish_events(events)
            logger.info(
                "stale_orders_cancelled",
                count=len(cancelled),
                order_ids=cancelled,
                cutoff=cutoff.isoformat(),
            )
        else:
            logger.debug("stale_orders_none", cutoff=cutoff.isoformat())
        return cancelled
