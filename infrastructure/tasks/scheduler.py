"""In-process periodic jobs running on the API event loop.

Used when no Celery beat is deployed. A job fires immediately on start and
then at a fixed rate; a tick that arrives while the previous run is still in
flight is skipped instead of piling up.
"""
from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Optional

from core.logging_config import get_logger

logger = get_logger(__name__)


class PeriodicJob:
    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        *,
        interval_seconds: float,
        run_immediately: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self._func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._loop_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self.runs = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("periodic_job_started", job=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        for task in (self._loop_task, self._run_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._run_task = None
        logger.info("periodic_job_stopped", job=self.name, runs=self.runs, skipped=self.skipped)

    def tick(self) -> bool:
        """Start one run unless the previous one is still going."""
        if self.running:
            self.skipped += 1
            logger.warning("periodic_job_skipped", job=self.name)
            return False
        self._run_task = asyncio.create_task(self._run_once(), name=f"periodic-run:{self.name}")
        return True

    async def wait_idle(self) -> None:
        if self._run_task is not None:
            await asyncio.shield(self._run_task)

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            self.tick()
            await asyncio.sleep(self.interval_seconds)

    async def _run_once(self) -> None:
        self.runs += 1
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception:
            # 失败仅记录，下一个周期重试
            logger.exception("periodic_job_failed", job=self.name)
