from collections.abc import Generator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlmodel import Session

from site_screener.core.db import engine
from site_screener.monitor.job_control import LocalJobControl
from site_screener.monitor.reconcile import ResultReconciler
from site_screener.monitor.task_monitor import BackgroundTaskMonitor
from site_screener.pipeline.stage_client import StageClient
from site_screener.services.analysis_service import AnalysisService
from site_screener.store.failed_journal import FailedJournal
from site_screener.store.record_store import RecordStore
from site_screener.store.task_registry import TaskRegistry
from site_screener.worker_tasks.background import BackgroundTaskManager


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


# 进程内单例，路由和 lifespan 共用
@lru_cache
def get_record_store() -> RecordStore:
    return RecordStore.from_settings()


@lru_cache
def get_failed_journal() -> FailedJournal:
    return FailedJournal.from_settings()


@lru_cache
def get_stage_client() -> StageClient:
    return StageClient()


@lru_cache
def get_task_manager() -> BackgroundTaskManager:
    return BackgroundTaskManager(engine, journal=get_failed_journal())


@lru_cache
def get_task_monitor() -> BackgroundTaskMonitor:
    return BackgroundTaskMonitor(
        LocalJobControl(get_task_manager()),
        ResultReconciler(get_record_store()),
        registry=TaskRegistry.from_settings(),
    )


@lru_cache
def get_analysis_service() -> AnalysisService:
    monitor = get_task_monitor()
    return AnalysisService(
        get_record_store(),
        get_failed_journal(),
        monitor.job_control,
        monitor,
    )


SessionDep = Annotated[Session, Depends(get_db)]
RecordStoreDep = Annotated[RecordStore, Depends(get_record_store)]
FailedJournalDep = Annotated[FailedJournal, Depends(get_failed_journal)]
StageClientDep = Annotated[StageClient, Depends(get_stage_client)]
TaskManagerDep = Annotated[BackgroundTaskManager, Depends(get_task_manager)]
AnalysisServiceDep = Annotated[AnalysisService, Depends(get_analysis_service)]
