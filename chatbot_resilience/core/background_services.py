"""
Background maintenance for the cache and memory stores.

Runs each store's ``cleanup()`` on a fixed interval, independently of
request traffic. A failing sweep is logged and retried at the next interval.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chatbot_resilience.core.shared.timing import Clock, system_clock

logger = logging.getLogger(__name__)


@dataclass
class MaintenanceJob:
    """A periodic cleanup registered with the manager."""

    name: str
    cleanup: Callable[[], Awaitable[Any]]
    interval: float
    runs: int = 0
    failures: int = 0
    last_run_at: float | None = None
    last_result: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "interval": self.interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at,
            "last_result": self.last_result,
        }


class CacheMaintenanceManager:
    """
    Manages the lifecycle of periodic cleanup tasks.

    One asyncio task per registered job; ``stop`` cancels them all and waits
    for them to finish.
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        """Initialize maintenance manager."""
        self._clock = clock
        self._jobs: dict[str, MaintenanceJob] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        """Check if maintenance loops are running."""
        return self._running

    def register(self, name: str, cleanup: Callable[[], Awaitable[Any]], interval: float) -> MaintenanceJob:
        """
        Register a cleanup coroutine function.

        Raises:
            ValueError: If the interval is not positive or the name is taken
            RuntimeError: If the manager is already running
        """
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if name in self._jobs:
            raise ValueError(f"maintenance job '{name}' already registered")
        if self._running:
            raise RuntimeError("cannot register jobs while maintenance is running")

        job = MaintenanceJob(name=name, cleanup=cleanup, interval=interval)
        self._jobs[name] = job
        return job

    async def start(self) -> None:
        """Start one loop per registered job."""
        if self._running:
            logger.warning("Cache maintenance already running")
            return

        for job in self._jobs.values():
            task = asyncio.create_task(self._run_loop(job), name=f"cache_maintenance_{job.name}")
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        self._running = True
        logger.info(f"Cache maintenance started with {len(self._jobs)} jobs")

    async def stop(self) -> None:
        """Stop all maintenance loops gracefully."""
        if not self._running:
            logger.warning("Cache maintenance not running")
            return

        for task in list(self._background_tasks):
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._background_tasks.clear()
        self._running = False
        logger.info("Cache maintenance stopped")

    async def run_once(self, name: str | None = None) -> dict[str, Any]:
        """Run one job (or every job) immediately; returns each job's result."""
        if name is not None and name not in self._jobs:
            raise KeyError(f"unknown maintenance job '{name}'")
        jobs = [self._jobs[name]] if name is not None else list(self._jobs.values())
        results = {}
        for job in jobs:
            await self._run_job(job)
            results[job.name] = job.last_result
        return results

    def get_status(self) -> dict[str, Any]:
        """
        Get status of maintenance jobs.

        Returns:
            Dictionary with running flag and per-job counters.
        """
        return {
            "running": self._running,
            "active_tasks": len(self._background_tasks),
            "jobs": {name: job.to_dict() for name, job in self._jobs.items()},
        }

    async def _run_loop(self, job: MaintenanceJob) -> None:
        while True:
            await asyncio.sleep(job.interval)
            await self._run_job(job)

    async def _run_job(self, job: MaintenanceJob) -> None:
        job.last_run_at = self._clock()
        job.runs += 1
        try:
            job.last_result = await job.cleanup()
        except Exception as e:
            job.failures += 1
            logger.error(f"Cache maintenance job '{job.name}' failed: {e}", exc_info=True)
        else:
            logger.debug(f"Cache maintenance job '{job.name}' completed: {job.last_result}")
