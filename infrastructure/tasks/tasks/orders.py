"""Order maintenance Celery tasks"""
from __future__ import annotations

import asyncio
from datetime import timedelta

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ..utils.base_task import BaseTask
from application.services.order_reaper import StaleOrderReaper
from core.config import settings
from core.logging_config import get_logger
from infrastructure.database import _build_async_url
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

logger = get_logger(__name__)


async def _reap_stale_orders() -> list[str]:
    # 每次 asyncio.run 都是新的事件循环，连接不能跨循环复用
    engine = create_async_engine(_build_async_url(settings.database.url), poolclass=NullPool)
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    try:
        reaper = StaleOrderReaper(
            lambda readonly=False: SQLAlchemyUnitOfWork(session_factory, readonly=readonly),
            max_age=timedelta(seconds=settings.reaper.max_age_seconds),
        )
        return await reaper.sweep()
    finally:
        await engine.dispose()


@shared_task(
    name="orders.reap_stale",
    bind=True,
    base=BaseTask,
    ignore_result=True,
)
def reap_stale_orders(self) -> int:
    """Cancel pending orders older than the configured age.

    Not retried: the next beat tick runs the same sweep.
    """
    cancelled = asyncio.run(_reap_stale_orders())
    logger.info("reap_stale_orders_done", cancelled=len(cancelled))
    return len(cancelled)
