"""
Background Task Monitor

Polls background jobs and feeds their snapshots into the reconciler. Each
monitored task has its own polling task; polls of one task never overlap.
Polling stops when the job completes or fails, when the job disappears, or
when the wall-clock budget runs out.
"""
import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum

from site_screener.core.config import settings
from site_screener.models import FINISHED_TASK_STATUSES, TaskStatus
from site_screener.monitor.job_control import JobControl
from site_screener.monitor.reconcile import ResultReconciler
from site_screener.store.task_registry import TaskRegistry

logger = logging.getLogger(__name__)


class MonitorOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    MISSING = "missing"
    CANCELLED = "cancelled"


class BackgroundTaskMonitor:
    def __init__(
        self,
        job_control: JobControl,
        reconciler: ResultReconciler,
        registry: TaskRegistry | None = None,
        interval: float = settings.BACKGROUND_POLL_INTERVAL,
        max_duration: float = settings.BACKGROUND_MONITOR_MAX_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_control = job_control
        self.reconciler = reconciler
        self.registry = registry or TaskRegistry()
        self.interval = interval
        self.max_duration = max_duration
        self._sleep = sleep
        self._clock = clock
        self._pollers: dict[str, asyncio.Task] = {}

    def is_monitoring(self, task_id: str) -> bool:
        poller = self._pollers.get(task_id)
        return poller is not None and not poller.done()

    def monitored(self) -> list[str]:
        return [task_id for task_id in self._pollers if self.is_monitoring(task_id)]

    def start(self, task_id: str) -> asyncio.Task:
        """Begin polling ``task_id``; a task that is already monitored keeps its poller."""
        if self.is_monitoring(task_id):
            return self._pollers[task_id]
        self.registry.add(task_id)
        poller = asyncio.create_task(self._poll(task_id))
        self._pollers[task_id] = poller
        logger.info(f"[{task_id}] Monitoring background task")
        return poller

    async def wait(self, task_id: str) -> MonitorOutcome | None:
        poller = self._pollers.get(task_id)
        if poller is None:
            return None
        try:
            return await poller
        except asyncio.CancelledError:
            return MonitorOutcome.CANCELLED

    async def cancel(self, task_id: str) -> bool:
        """Ask the job to stop and stop polling it. The server decides when the job really ends."""
        try:
            acknowledged = await self.job_control.cancel(task_id)
        finally:
            self._stop(task_id)
            self.registry.remove(task_id)
        logger.info(f"[{task_id}] Monitoring cancelled (acknowledged={acknowledged})")
        return acknowledged

    def _stop(self, task_id: str) -> None:
        poller = self._pollers.pop(task_id, None)
        if poller is not None and not poller.done():
            poller.cancel()

    async def stop_all(self) -> None:
        pollers = list(self._pollers.values())
        for poller in pollers:
            poller.cancel()
        self._pollers.clear()
        if pollers:
            await asyncio.gather(*pollers, return_exceptions=True)

    async def resume(self) -> list[str]:
        """
        Pick up tasks persisted by a previous session.

        Finished tasks get a final result sync and are dropped, unknown ones are
        dropped silently, pending and running ones are polled again.
        """
        resumed = []
        for task_id in self.registry.task_ids():
            try:
                snapshot = await self.job_control.status(task_id)
            except Exception as e:
                logger.warning(f"[{task_id}] Could not check persisted task: {e}")
                continue
            if snapshot is None:
                self.registry.remove(task_id)
                continue
            if snapshot.status in FINISHED_TASK_STATUSES:
                self.reconciler.apply_snapshot(snapshot)
                await self._sync_results(task_id)
                self.registry.remove(task_id)
                continue
            self.start(task_id)
            resumed.append(task_id)
        if resumed:
            logger.info(f"Resumed monitoring of {len(resumed)} background tasks")
        return resumed

    async def _sync_results(self, task_id: str) -> None:
        try:
            results = await self.job_control.results(task_id)
        except Exception as e:
            logger.warning(f"[{task_id}] Could not fetch full results: {e}")
            return
        if results is not None:
            self.reconciler.apply_results(results)

    async def _poll(self, task_id: str) -> MonitorOutcome:
        deadline = self._clock() + self.max_duration
        while True:
            try:
                snapshot = await self.job_control.status(task_id)
            except Exception as e:
                # 网络抖动不终止监控，等下一轮
                logger.warning(f"[{task_id}] Status poll failed: {e}")
                snapshot = None
                missing = False
            else:
                missing = snapshot is None

            if missing:
                logger.info(f"[{task_id}] Background task no longer exists, dropping it")
                self.registry.remove(task_id)
                return MonitorOutcome.MISSING

            if snapshot is not None:
                self.reconciler.apply_snapshot(snapshot)
                if snapshot.status in FINISHED_TASK_STATUSES:
                    await self._sync_results(task_id)
                    self.registry.remove(task_id)
                    logger.info(f"[{task_id}] Background task {snapshot.status.value}, monitoring stopped")
                    if snapshot.status == TaskStatus.COMPLETED:
                        return MonitorOutcome.COMPLETED
                    return MonitorOutcome.FAILED

            if self._clock() >= deadline:
                logger.warning(f"[{task_id}] Monitoring budget of {self.max_duration}s used up, stopping")
                return MonitorOutcome.TIMED_OUT

            await self._sleep(self.interval)
