"""Periodic audit log retention cleanup."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class RetentionScheduler:
    def __init__(self, store, retention_days: int = 90, interval_seconds: float = 3600):
        self.store = store
        self.retention_days = retention_days
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.interval_seconds > 0

    async def run_once(self) -> int:
        removed = await self.store.cleanup(self.retention_days)
        logger.info("Audit retention run removed=%d retention_days=%d", removed, self.retention_days)
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Audit retention cleanup failed")

    def start(self) -> None:
        if not self.enabled:
            logger.info("Audit retention scheduler disabled")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
