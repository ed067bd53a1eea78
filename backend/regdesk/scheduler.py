from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .context import AppContext

logger = logging.getLogger("regdesk.scheduler")

# In-memory limiters are pruned with the same horizon they enforce.
HTTP_LIMITER_PERIOD_SECONDS = 60


class PeriodicTask:
    """Runs a blocking job every ``interval_seconds`` on a worker thread.

    A failing run is logged and the loop keeps its schedule.
    """

    def __init__(self, name: str, interval_seconds: float, func: Callable[[], object]) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name=f"periodic-{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> None:
        try:
            result = await asyncio.to_thread(self.func)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Periodic task failed", extra={"event": "task_failed", "task": self.name})
            return
        finally:
            self.runs += 1
        logger.debug(
            "Periodic task finished",
            extra={"event": "task_finished", "task": self.name, "attempts": result},
        )

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                return
            except asyncio.TimeoutError:
                pass
            await self.run_once()


class MaintenanceScheduler:
    """Owns the housekeeping jobs that keep the durable gate tables small."""

    def __init__(self, ctx: "AppContext") -> None:
        self.ctx = ctx
        settings = ctx.settings
        self.tasks = [
            PeriodicTask(
                "rate_limit_cleanup",
                settings.rate_limit_cleanup_interval_seconds,
                self.cleanup_rate_limits,
            ),
            PeriodicTask(
                "block_cleanup",
                settings.block_cleanup_interval_seconds,
                self.cleanup_blocks,
            ),
        ]

    def cleanup_rate_limits(self) -> int:
        return self.ctx.gate.cleanup(self.ctx.settings.rate_limit_retention_seconds)

    def cleanup_blocks(self) -> int:
        removed = self.ctx.blocks.cleanup_expired()
        self.ctx.tracker.sweep()
        self.ctx.http_limiter.prune(HTTP_LIMITER_PERIOD_SECONDS)
        self.ctx.analytics_limiter.prune(HTTP_LIMITER_PERIOD_SECONDS)
        return removed

    def start(self) -> None:
        for task in self.tasks:
            task.start()
        logger.info("Maintenance scheduler started", extra={"event": "scheduler_started"})

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()
        logger.info("Maintenance scheduler stopped", extra={"event": "scheduler_stopped"})
