from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from .engine import DispatchEngine
from .exceptions import PersistenceFailed


logger = structlog.get_logger(__name__)


class TickRunner:
    """Re-runs batch formation on a fixed period so SLA expirations fire without new orders."""

    def __init__(self, engine: DispatchEngine, interval_sec: float = 30.0):
        self.engine = engine
        self.interval_sec = max(1.0, float(interval_sec))

        self.running: bool = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        if self.running and self._task and not self._task.done():
            return

        self.running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        self.running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def tick_once(self):
        try:
            run = self.engine.tick()
        except PersistenceFailed:
            logger.exception("ticker.persist_failed")
            return None
        if run is not None and run.routes:
            logger.info("ticker.routes_formed", count=len(run.routes))
        return run

    async def _loop(self):
        while self.running:
            await asyncio.sleep(self.interval_sec)
            # Saving may hit the disk; keep it off the event loop.
            try:
                await asyncio.to_thread(self.tick_once)
            except Exception:
                logger.exception("ticker.tick_failed")
