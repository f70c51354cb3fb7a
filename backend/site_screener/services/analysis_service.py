"""
Run control for the record store: start and stop analysis, batch extraction
and live progress. Large runs are handed to a background task and tracked by
the monitor; everything else runs in the foreground coordinator.
"""
import logging
from collections.abc import Callable

from fastapi import BackgroundTasks

from site_screener.core.config import settings
from site_screener.models import (
    PENDING_STATUSES,
    AnalysisConfig,
    BackgroundTaskLink,
    RecordStatus,
    ResultLabel,
    RunProgress,
    RunStarted,
    TaskType,
)
from site_screener.monitor.job_control import JobControl
from site_screener.monitor.task_monitor import BackgroundTaskMonitor
from site_screener.pipeline.coordinator import BatchCoordinator
from site_screener.pipeline.errors import validate_config
from site_screener.pipeline.stage_client import StageClient
from site_screener.store.failed_journal import FailedJournal
from site_screener.store.record_store import RecordStore

logger = logging.getLogger(__name__)


class RunInProgressError(Exception):
    """A foreground run is already active."""


class AnalysisService:
    def __init__(
        self,
        store: RecordStore,
        journal: FailedJournal,
        job_control: JobControl,
        monitor: BackgroundTaskMonitor,
        client_factory: Callable[[], StageClient] = StageClient,
        background_threshold: int = settings.BACKGROUND_TASK_THRESHOLD,
    ):
        self.store = store
        self.journal = journal
        self.job_control = job_control
        self.monitor = monitor
        self.client_factory = client_factory
        self.background_threshold = background_threshold
        self.coordinator: BatchCoordinator | None = None

    @property
    def is_running(self) -> bool:
        return self.coordinator is not None and self.coordinator.progress.running

    def _new_coordinator(self, config: AnalysisConfig) -> BatchCoordinator:
        if self.is_running:
            raise RunInProgressError("A run is already in progress")
        coordinator = BatchCoordinator(self.store, self.client_factory(), config, journal=self.journal)
        # 后台任务开始执行前即视为运行中
        coordinator.progress = RunProgress(running=True)
        self.coordinator = coordinator
        return coordinator

    async def start_analysis(
        self,
        background_tasks: BackgroundTasks,
        config: AnalysisConfig,
        ids: list[str] | None = None,
    ) -> RunStarted:
        """
        Analyse the given records, or every pending record when ``ids`` is None.

        Raises ConfigError before anything is dispatched when the AI endpoint is
        not configured, and RunInProgressError when a foreground run is active.
        """
        validate_config(config)
        if self.is_running:
            raise RunInProgressError("A run is already in progress")

        candidates = self.store.all() if ids is None else self.store.get_many(ids)
        records = [r for r in candidates if r.status in PENDING_STATUSES and not self._in_background(r)]
        if not records:
            return RunStarted(mode="none", total=0)

        if len(records) > self.background_threshold:
            task_id = await self._start_background(records, config)
            if task_id is not None:
                return RunStarted(mode="background", total=len(records), task_id=task_id)

        coordinator = self._new_coordinator(config)
        background_tasks.add_task(coordinator.run_analysis, [r.id for r in records])
        logger.info(f"Foreground analysis scheduled for {len(records)} records")
        return RunStarted(mode="foreground", total=len(records))

    def _in_background(self, record) -> bool:
        # 已交给仍在监控中的后台任务的记录，不再重复提交
        link = record.background_task
        return link is not None and self.monitor.is_monitoring(link.task_id)

    async def _start_background(self, records, config: AnalysisConfig) -> str | None:
        try:
            task_id = await self.job_control.create([r.url for r in records], config, TaskType.ANALYZE)
        except Exception as e:
            logger.error(f"Background task creation failed, falling back to foreground: {e}")
            return None
        for record in records:
            self.store.update(record.id, {"background_task": BackgroundTaskLink(task_id=task_id)})
        self.monitor.start(task_id)
        logger.info(f"[{task_id}] {len(records)} records routed to a background task")
        return task_id

    def extraction_candidates(self, ids: list[str] | None = None) -> list[str]:
        """
        Selected records that completed and were never extracted, or, with no
        selection, every Y record without extracted info.
        """
        if ids is not None:
            return [
                r.id
                for r in self.store.get_many(ids)
                if r.status == RecordStatus.COMPLETED and not r.has_info_crawled
            ]
        return [
            r.id
            for r in self.store.all()
            if r.result == ResultLabel.Y and not r.has_info_crawled
        ]

    async def start_extraction(
        self,
        background_tasks: BackgroundTasks,
        config: AnalysisConfig,
        ids: list[str] | None = None,
    ) -> RunStarted:
        validate_config(config)
        candidates = self.extraction_candidates(ids)
        if not candidates:
            return RunStarted(mode="none", total=0)
        coordinator = self._new_coordinator(config)
        background_tasks.add_task(coordinator.run_extraction, candidates)
        logger.info(f"Batch extraction scheduled for {len(candidates)} records")
        return RunStarted(mode="foreground", total=len(candidates))

    def stop(self) -> bool:
        if not self.is_running:
            return False
        self.coordinator.cancel()
        return True

    def progress(self) -> RunProgress:
        if self.coordinator is None:
            return RunProgress()
        return self.coordinator.progress.model_copy()
