"""HealthMonitor - periodic liveness sweep over the worker pool.

Backstop for workers that die outside a request (OOM kill, crash while idle),
where no in-flight exchange would notice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .pool import WorkerPool

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Runs pool.check_health() every interval seconds until stopped."""

    def __init__(self, pool: WorkerPool, interval: float = 10.0):
        self.pool = pool
        self.interval = interval
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        # asyncio.wait never raises the monitor's own CancelledError, so one
        # raised here was aimed at our caller and must propagate
        await asyncio.wait([task])
        if not task.cancelled():
            task.result()

    def check_once(self) -> None:
        """One sweep: replace dead workers and log pool condition."""
        found = self.pool.check_health()
        self.ticks += 1

        if any(found.values()):
            logger.info(
                f"Health sweep: {found['dead']} dead, {found['respawned']} empty slots refilled, "
                f"{found['oversized']} oversized retired"
            )

        live, capacity = self.pool.live_count(), self.pool.capacity
        if self.pool.fatal:
            logger.critical(f"Worker pool cannot spawn processes ({live}/{capacity} live); operator intervention required")
        elif self.pool.degraded:
            logger.warning(f"Worker pool degraded: {live}/{capacity} live")
        else:
            logger.debug(f"Worker pool: {live}/{capacity} live, {self.pool.idle_count()} idle")

    async def _run(self) -> None:
        logger.info(f"Health monitor started (checks every {self.interval}s)")
        while True:
            try:
                await asyncio.sleep(self.interval)
                self.check_once()
            except asyncio.CancelledError:
                logger.info("Health monitor cancelled")
                raise
            except Exception as e:
                logger.error(f"Unexpected error in health monitor: {e}", exc_info=True)
