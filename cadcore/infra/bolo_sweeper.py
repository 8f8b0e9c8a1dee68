# cadcore/infra/bolo_sweeper.py
"""
In-process BOLO expiry sweeper.

Read paths already report an expired BOLO as RESOLVED; the sweeper only
makes sure a ``BoloExpired`` event goes out once per BOLO so consoles
drop it without waiting for their next full reload.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from cadcore.config import settings
from cadcore.core.bolos import BOLORegistry
from cadcore.infra.logging_config import get_logger
from cadcore.infra.metrics import inc_counter

logger = get_logger(__name__)


class BoloExpirySweeper:
    """
    Usage:
        sweeper = BoloExpirySweeper(core.bolos)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        registry: BOLORegistry,
        *,
        interval: Optional[float] = None,
        actor: str = "system:bolo-sweeper",
    ):
        self._registry = registry
        self._interval = interval if interval is not None else settings.bolo_sweep_interval_seconds
        self._actor = actor
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="bolo_sweeper")
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"BOLO sweeper started: interval={self._interval}s")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("BOLO sweeper stopped")

    async def sweep_once(self) -> int:
        announced = await self._registry.sweep_expired(actor=self._actor)
        if announced:
            logger.info(f"BOLO sweep announced {announced} expiry(ies)")
        inc_counter("bolo_sweeps_total")
        return announced

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"BOLO sweeper loop error: {exc}", exc_info=True)
                inc_counter("bolo_sweeper_loop_errors")
                await asyncio.sleep(self._interval * 2)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected sweeper death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"BOLO sweeper task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
