"""
Periodic job scheduler.

Each job runs on its own asyncio ticker. A job that is still running when
its next tick (or a manual trigger) arrives is skipped, so two runs of the
same job never overlap. Different jobs may overlap freely.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from vigil.config import Settings
from vigil.pipeline.orchestrator import EventPipeline
from vigil.utils import utcnow

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """A job with a fixed interval and a skip-if-running guard."""

    def __init__(self, name: str, interval: float, func: JobFunc, run_immediately: bool = False):
        self.name = name
        self.interval = interval
        self._func = func
        self.run_immediately = run_immediately

        self._running = False
        self._ticker: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self.last_run = None
        self.last_duration: Optional[float] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> bool:
        """
        Run the job now unless a run is already in progress.

        Returns:
            False if the run was skipped
        """
        if self._running:
            self.skipped += 1
            logger.warning(f"Scheduled task '{self.name}' still running, skipping this run")
            return False

        self._running = True
        started = time.monotonic()
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.exception(f"Scheduled task '{self.name}' failed")
        else:
            self.runs += 1
            self.last_error = None
        finally:
            self._running = False
            self.last_run = utcnow()
            self.last_duration = time.monotonic() - started
        return True

    def _spawn(self) -> None:
        task = asyncio.create_task(self.run_once(), name=f"job:{self.name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _tick(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            self._spawn()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self._tick(), name=f"ticker:{self.name}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel the ticker and wait for an in-flight run to finish."""
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None

        if self._inflight:
            _, pending = await asyncio.wait(set(self._inflight), timeout=timeout)
            for task in pending:
                logger.warning(f"Scheduled task '{self.name}' did not finish in time, cancelling")
                task.cancel()

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval,
            "running": self._running,
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_duration_seconds": self.last_duration,
            "last_error": self.last_error,
        }


class Scheduler:
    """Owns the periodic tasks of the service."""

    def __init__(self):
        self._tasks: dict[str, PeriodicTask] = {}
        self._started = False

    def add(
        self, name: str, interval: float, func: JobFunc, run_immediately: bool = False
    ) -> PeriodicTask:
        if name in self._tasks:
            raise ValueError(f"Task already registered: {name}")
        task = PeriodicTask(name, interval, func, run_immediately)
        self._tasks[name] = task
        if self._started:
            task.start()
        logger.info(f"Registered scheduled task: {name} (every {interval}s)")
        return task

    def get(self, name: str) -> PeriodicTask:
        return self._tasks[name]

    @property
    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks.values())

    def start(self) -> None:
        for task in self._tasks.values():
            task.start()
        self._started = True
        logger.info(f"Scheduler started with {len(self._tasks)} tasks")

    async def trigger(self, name: str) -> bool:
        """Run a task immediately, honouring its skip-if-running guard."""
        return await self._tasks[name].run_once()

    async def stop(self, timeout: Optional[float] = None) -> None:
        await asyncio.gather(*(task.stop(timeout) for task in self._tasks.values()))
        self._started = False
        logger.info("Scheduler stopped")

    def status(self) -> dict[str, Any]:
        return {name: task.status() for name, task in self._tasks.items()}


def build_scheduler(pipeline: EventPipeline, settings: Settings) -> Scheduler:
    """Register the pipeline's periodic jobs."""
    scheduler = Scheduler()
    scheduler.add("audit_flush", settings.audit_flush_interval_seconds, pipeline.flush_audit)
    scheduler.add(
        "metrics", settings.metrics_interval_seconds, pipeline.sample_metrics, run_immediately=True
    )
    scheduler.add("anomaly_detection", settings.anomaly_interval_seconds, pipeline.detect_anomalies)
    scheduler.add(
        "security_scan", settings.security_scan_interval_seconds, pipeline.run_security_scan
    )
    scheduler.add(
        "daily_report", settings.daily_report_interval_seconds, pipeline.generate_daily_report
    )
    scheduler.add(
        "integrity_check", settings.integrity_check_interval_seconds, pipeline.run_integrity_check
    )
    scheduler.add("cleanup", settings.cleanup_interval_seconds, pipeline.run_cleanup)
    return scheduler
