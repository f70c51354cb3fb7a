"""
Server-side background jobs.

A background task runs the batch coordinator over its own scratch record store
and mirrors every item event into the ``background_task`` row, so a client can
poll the row for a snapshot long after the submitting request has returned.
"""
import asyncio
import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Engine
from sqlmodel import Session, col, select

from site_screener.core.config import settings
from site_screener.core.db import engine as default_engine
from site_screener.models import (
    ACTIVE_TASK_STATUSES,
    FINISHED_TASK_STATUSES,
    AnalysisConfig,
    BackgroundTask,
    BackgroundTaskPublic,
    BackgroundTasksPublic,
    RunProgress,
    SnapshotSummary,
    TaskError,
    TaskProgress,
    TaskResult,
    TaskResultsPublic,
    TaskSnapshot,
    TaskState,
    TaskStatus,
    TaskSummary,
    TaskType,
)
from site_screener.pipeline.coordinator import BatchCoordinator, ItemOutcome
from site_screener.pipeline.errors import ConfigError
from site_screener.pipeline.stage_client import StageClient
from site_screener.store.backends import MemoryBackend
from site_screener.store.failed_journal import FailedJournal
from site_screener.store.record_store import RecordStore, normalize_url

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "cancelled"


def _parse_id(task_id: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(task_id, uuid.UUID):
        return task_id
    try:
        return uuid.UUID(task_id)
    except ValueError:
        return None


def load_state(task: BackgroundTask) -> TaskState:
    if not task.task_state:
        return TaskState()
    return TaskState.model_validate_json(task.task_state)


def to_public(task: BackgroundTask) -> BackgroundTaskPublic:
    return BackgroundTaskPublic(
        id=str(task.id),
        type=TaskType(task.type),
        status=TaskStatus(task.status),
        progress=TaskProgress(current=task.progress_current, total=task.progress_total),
        url_count=len(json.loads(task.urls_json)),
        results_count=task.results_count,
        errors_count=task.errors_count,
        error=task.error,
        created_at=task.created_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
    )


class TaskStateWriter:
    """Mirrors coordinator callbacks into the task row."""

    def __init__(self, db_engine: Engine, task_id: uuid.UUID):
        self.engine = db_engine
        self.task_id = task_id
        self.state = TaskState()
        self.progress = RunProgress()

    def item_started(self, url: str) -> None:
        if url not in self.state.currently_processing:
            self.state.currently_processing.append(url)
        self.save()

    def item_finished(self, url: str, outcome: ItemOutcome) -> None:
        if url in self.state.currently_processing:
            self.state.currently_processing.remove(url)
        if isinstance(outcome, TaskResult):
            self.state.results.append(outcome)
        elif isinstance(outcome, TaskError):
            self.state.errors.append(outcome)
        self.save()

    def progress_changed(self, progress: RunProgress) -> None:
        self.progress = progress
        self.save()

    def save(self) -> None:
        with Session(self.engine) as db_session:
            task = db_session.get(BackgroundTask, self.task_id)
            if not task:
                return
            task.task_state = self.state.model_dump_json()
            task.progress_current = self.progress.current
            task.progress_total = max(task.progress_total, self.progress.total)
            task.results_count = len(self.state.results)
            task.errors_count = len(self.state.errors)
            db_session.add(task)
            db_session.commit()


class BackgroundTaskManager:
    def __init__(
        self,
        db_engine: Engine = default_engine,
        journal: FailedJournal | None = None,
        client_factory: Callable[[], StageClient] = StageClient,
        recent_limit: int = settings.BACKGROUND_RECENT_LIMIT,
    ):
        self.engine = db_engine
        self.journal = journal
        self.client_factory = client_factory
        self.recent_limit = recent_limit
        # 运行配置含 API key，只保存在内存中
        self._configs: dict[str, AnalysisConfig] = {}
        self._coordinators: dict[str, BatchCoordinator] = {}
        self._launched: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # lifecycle

    def create(
        self,
        session: Session,
        urls: list[str],
        config: AnalysisConfig | None = None,
        task_type: TaskType = TaskType.ANALYZE,
    ) -> BackgroundTask:
        normalized = [u for u in (normalize_url(raw) for raw in urls) if u]
        normalized = list(dict.fromkeys(normalized))
        if not normalized:
            raise ValueError("No valid URLs to process")
        config = config or AnalysisConfig()

        task = BackgroundTask(
            type=task_type.value,
            status=TaskStatus.PENDING.value,
            progress_total=len(normalized),
            urls_json=json.dumps(normalized),
            config_json=json.dumps(config.public()),
            task_state=TaskState().model_dump_json(),
        )
        session.add(task)
        session.commit()
        session.refresh(task)
        self._configs[str(task.id)] = config
        logger.info(f"[{task.id}] Background {task_type.value} task created for {len(normalized)} URLs")
        return task

    def launch(self, task_id: str) -> asyncio.Task:
        """Run the task on the current event loop without awaiting it."""
        runner = asyncio.create_task(self.run(task_id))
        self._launched.add(runner)
        runner.add_done_callback(self._launched.discard)
        return runner

    def _finish(self, task_id: uuid.UUID, status: TaskStatus, error: str | None = None) -> None:
        with Session(self.engine) as db_session:
            task = db_session.get(BackgroundTask, task_id)
            if not task:
                return
            task.status = status.value
            task.error = error
            task.completed_at = datetime.now()
            db_session.add(task)
            db_session.commit()
        logger.info(f"[{task_id}] Background task {status.value}" + (f": {error}" if error else ""))

    async def run(self, task_id: str) -> None:
        tid = _parse_id(task_id)
        if tid is None:
            logger.error(f"Invalid background task id {task_id}")
            return

        with Session(self.engine) as db_session:
            task = db_session.get(BackgroundTask, tid)
            if not task:
                logger.error(f"[{task_id}] Background task not found")
                return
            if task.status != TaskStatus.PENDING.value:
                logger.warning(f"[{task_id}] Task is {task.status}, not starting it again")
                return
            cancelled_before_start = task.cancel_requested
            if not cancelled_before_start:
                task.status = TaskStatus.RUNNING.value
                task.started_at = datetime.now()
                db_session.add(task)
                db_session.commit()
            urls = json.loads(task.urls_json)
            task_type = TaskType(task.type)
            stored_config = task.config_json

        if cancelled_before_start:
            self._finish(tid, TaskStatus.FAILED, CANCELLED_ERROR)
            return

        config = self._configs.pop(str(tid), None)
        if config is None:
            config = AnalysisConfig.model_validate(json.loads(stored_config)) if stored_config else AnalysisConfig()

        scratch = RecordStore(MemoryBackend(), max_records=max(len(urls), 1), retention_days=0)
        scratch.add_urls(urls)
        writer = TaskStateWriter(self.engine, tid)
        coordinator = BatchCoordinator(
            scratch,
            self.client_factory(),
            config,
            journal=self.journal,
            on_progress=writer.progress_changed,
            on_item_started=writer.item_started,
            on_item_finished=writer.item_finished,
        )
        self._coordinators[str(tid)] = coordinator
        logger.info(f"[{tid}] Background {task_type.value} task running over {len(urls)} URLs")

        try:
            record_ids = [r.id for r in scratch.all()]
            if task_type == TaskType.CRAWL:
                report = await coordinator.run_crawl(record_ids)
            else:
                report = await coordinator.run_analysis(record_ids)
        except ConfigError as e:
            self._finish(tid, TaskStatus.FAILED, e.message)
            return
        except asyncio.CancelledError:
            self._finish(tid, TaskStatus.FAILED, CANCELLED_ERROR)
            raise
        except Exception as e:
            logger.exception(f"[{tid}] Background task crashed")
            self._finish(tid, TaskStatus.FAILED, str(e))
            return
        finally:
            self._coordinators.pop(str(tid), None)

        if report.cancelled:
            self._finish(tid, TaskStatus.FAILED, CANCELLED_ERROR)
        else:
            self._finish(tid, TaskStatus.COMPLETED)

    def cancel(self, session: Session, task_id: str) -> BackgroundTask | None:
        """Request cancellation; pending tasks end at once, running ones stop cooperatively."""
        tid = _parse_id(task_id)
        task = session.get(BackgroundTask, tid) if tid else None
        if not task:
            return None
        if task.status not in {s.value for s in ACTIVE_TASK_STATUSES}:
            return task

        task.cancel_requested = True
        if task.status == TaskStatus.PENDING.value:
            task.status = TaskStatus.FAILED.value
            task.error = CANCELLED_ERROR
            task.completed_at = datetime.now()
        session.add(task)
        session.commit()
        session.refresh(task)

        coordinator = self._coordinators.get(str(tid))
        if coordinator is not None:
            coordinator.cancel()
        logger.info(f"[{tid}] Cancellation requested")
        return task

    async def shutdown(self) -> None:
        for coordinator in list(self._coordinators.values()):
            coordinator.cancel()
        if self._launched:
            await asyncio.gather(*self._launched, return_exceptions=True)

    def recover_orphans(self, session: Session) -> int:
        """Tasks left running by a previous process can never finish; mark them failed."""
        statement = select(BackgroundTask).where(
            col(BackgroundTask.status).in_([s.value for s in ACTIVE_TASK_STATUSES])
        )
        orphans = [t for t in session.exec(statement).all() if str(t.id) not in self._coordinators]
        for task in orphans:
            task.status = TaskStatus.FAILED.value
            task.error = "interrupted by server restart"
            task.completed_at = datetime.now()
            session.add(task)
        session.commit()
        if orphans:
            logger.warning(f"Marked {len(orphans)} orphaned background tasks as failed")
        return len(orphans)

    # ------------------------------------------------------------------
    # queries

    def get_status(self, session: Session, task_id: str) -> TaskSnapshot | None:
        tid = _parse_id(task_id)
        task = session.get(BackgroundTask, tid) if tid else None
        if not task:
            return None
        state = load_state(task)
        total = task.progress_total
        completed = len(state.results)
        failed = len(state.errors)
        return TaskSnapshot(
            task_id=str(task.id),
            status=TaskStatus(task.status),
            progress=TaskProgress(current=task.progress_current, total=total),
            currently_processing=state.currently_processing,
            recent_results=state.results[-self.recent_limit :],
            recent_errors=state.errors[-self.recent_limit :],
            summary=SnapshotSummary(
                total=total,
                completed=completed,
                failed=failed,
                remaining=max(total - completed - failed, 0),
            ),
        )

    def get_results(self, session: Session, task_id: str) -> TaskResultsPublic | None:
        tid = _parse_id(task_id)
        task = session.get(BackgroundTask, tid) if tid else None
        if not task:
            return None
        state = load_state(task)
        return TaskResultsPublic(
            task_id=str(task.id),
            status=TaskStatus(task.status),
            results=state.results,
            errors=state.errors,
        )

    def list_tasks(self, session: Session) -> BackgroundTasksPublic:
        statement = select(BackgroundTask).order_by(col(BackgroundTask.created_at).desc())
        tasks = session.exec(statement).all()
        summary = TaskSummary(total=len(tasks))
        for task in tasks:
            setattr(summary, task.status, getattr(summary, task.status) + 1)
        return BackgroundTasksPublic(
            data=[to_public(task) for task in tasks], count=len(tasks), summary=summary
        )

    def cleanup(self, session: Session) -> int:
        """Delete finished tasks."""
        statement = select(BackgroundTask).where(
            col(BackgroundTask.status).in_([s.value for s in FINISHED_TASK_STATUSES])
        )
        finished = session.exec(statement).all()
        for task in finished:
            session.delete(task)
        session.commit()
        logger.info(f"Cleaned up {len(finished)} finished background tasks")
        return len(finished)
