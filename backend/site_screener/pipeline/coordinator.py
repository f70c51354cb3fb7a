"""
Batch Coordinator

Drives records through crawl -> analyze -> (optional) extract. Records are
processed in consecutive batches of ``concurrency`` items; a batch fully
settles before the next one starts. Every item runs in its own asyncio task,
which is also its abort handle.

Cancellation is cooperative. ``cancel()`` sets a flag that is checked before
each batch, before each item is dispatched and before every stage call, and
aborts the tasks that are currently inside a stage call. Aborted items go back
to ``waiting``; they are never marked failed.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from site_screener.core.config import settings
from site_screener.models import (
    IN_FLIGHT_STATUSES,
    AnalysisConfig,
    AnalysisRecord,
    BatchReport,
    CrawledContent,
    ErrorDetails,
    ErrorKind,
    ErrorStage,
    FailedEntryCreate,
    RecordStatus,
    ResultLabel,
    RunProgress,
    TaskError,
    TaskResult,
)
from site_screener.pipeline.errors import StageCancelled, make_details, validate_config
from site_screener.pipeline.stage_client import StageClient
from site_screener.store.failed_journal import FailedJournal
from site_screener.store.record_store import RecordStore, StaleWriteError

logger = logging.getLogger(__name__)

ItemOutcome = TaskResult | TaskError | None

STATUS_STAGE = {
    RecordStatus.CRAWLING: ErrorStage.CRAWLING,
    RecordStatus.CRAWL_FAILED: ErrorStage.CRAWLING,
    RecordStatus.ANALYZING: ErrorStage.AI_ANALYSIS,
    RecordStatus.ANALYSIS_FAILED: ErrorStage.AI_ANALYSIS,
    RecordStatus.INFO_CRAWLING: ErrorStage.INFO_EXTRACTION,
    RecordStatus.INFO_CRAWL_FAILED: ErrorStage.INFO_EXTRACTION,
}


class _ItemState:
    """Per-item bookkeeping: the record id and the version of our last write."""

    def __init__(self, record: AnalysisRecord, keep_result: bool = False):
        self.record_id = record.id
        self.url = record.url
        self.version = record.version
        # 提取流程不能覆盖已有的分类结果
        self.keep_result = keep_result


class BatchCoordinator:
    def __init__(
        self,
        store: RecordStore,
        client: StageClient,
        config: AnalysisConfig,
        journal: FailedJournal | None = None,
        on_progress: Callable[[RunProgress], None] | None = None,
        on_item_started: Callable[[str], None] | None = None,
        on_item_finished: Callable[[str, ItemOutcome], None] | None = None,
        content_char_limit: int = settings.CRAWLED_CONTENT_CHAR_LIMIT,
    ):
        self.store = store
        self.client = client
        self.config = config
        self.journal = journal
        self.on_progress = on_progress
        self.on_item_started = on_item_started
        self.on_item_finished = on_item_finished
        self.content_char_limit = content_char_limit

        self.progress = RunProgress()
        self._cancelled = False
        self._cancel_event = asyncio.Event()
        # 正在执行阶段调用的条目，取消时逐个中止
        self._active: dict[str, asyncio.Task] = {}
        self._report = BatchReport()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """
        Stop the run. No stage call is made after this returns; items inside a
        stage call are aborted and their records reset to waiting.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._cancel_event.set()
        active = list(self._active.items())
        logger.info(f"Cancelling run, aborting {len(active)} in-flight items")
        for record_id, task in active:
            self._reset_to_waiting(record_id)
            task.cancel()

    # ------------------------------------------------------------------
    # public entry points

    async def run_analysis(self, record_ids: Iterable[str]) -> BatchReport:
        """Crawl and classify the given records; extraction follows for Y results."""
        validate_config(self.config)
        return await self._run(list(record_ids), self._analyze_item, mode="analysis")

    async def run_crawl(self, record_ids: Iterable[str]) -> BatchReport:
        """Crawl only; no AI endpoint is needed."""
        return await self._run(list(record_ids), self._crawl_item, mode="crawl")

    async def run_extraction(self, record_ids: Iterable[str]) -> BatchReport:
        """Extract emails and company info; records already extracted are skipped."""
        validate_config(self.config)
        eligible = [r.id for r in self.store.get_many(record_ids) if not r.has_info_crawled]
        return await self._run(eligible, self._extract_item, mode="extraction")

    # ------------------------------------------------------------------
    # batch loop

    async def _run(
        self,
        record_ids: list[str],
        handler: Callable[[_ItemState], Awaitable[ItemOutcome]],
        mode: str,
    ) -> BatchReport:
        ids = list(dict.fromkeys(record_ids))
        batch_size = self.config.concurrency
        self._report = BatchReport(total=len(ids))
        self.progress = RunProgress(running=True, mode=mode, total=len(ids))
        self._emit_progress()
        logger.info(f"Starting {mode} of {len(ids)} records, concurrency {batch_size}")

        try:
            for start in range(0, len(ids), batch_size):
                if self._cancelled:
                    break
                tasks = []
                for record_id in ids[start : start + batch_size]:
                    if self._cancelled:
                        break
                    tasks.append(asyncio.create_task(self._process_item(record_id, handler)))
                await asyncio.gather(*tasks)
                self._emit_progress()

                is_last = start + batch_size >= len(ids)
                if not self._cancelled and not is_last and self.config.delay_seconds > 0:
                    await self._pause(self.config.delay_seconds)
        finally:
            self.progress.running = False
            self.progress.stage = None
            self.progress.current_url = None
            self._emit_progress()

        self._report.cancelled = self._cancelled
        logger.info(
            f"Finished {mode}: {self._report.completed} completed, "
            f"{self._report.failed} failed, {self._report.reset} reset"
            + (" (cancelled)" if self._cancelled else "")
        )
        return self._report

    async def _pause(self, seconds: float) -> None:
        # 取消时立即结束等待
        try:
            async with asyncio.timeout(seconds):
                await self._cancel_event.wait()
        except TimeoutError:
            pass

    async def _process_item(
        self,
        record_id: str,
        handler: Callable[[_ItemState], Awaitable[ItemOutcome]],
    ) -> None:
        record = self.store.get(record_id)
        if record is None:
            logger.warning(f"Record {record_id} disappeared before processing, skipping")
            self._finish(None, counted_as="skipped")
            return

        state = _ItemState(record, keep_result=self.progress.mode == "extraction")
        try:
            outcome = await handler(state)
        except (StageCancelled, asyncio.CancelledError) as e:
            self._reset_to_waiting(record_id)
            self._report.reset += 1
            self._notify_finished(state.url, None)
            if isinstance(e, asyncio.CancelledError):
                if not self._cancelled:
                    # 外部取消了整个运行，继续向上传播
                    raise
                asyncio.current_task().uncancel()
            return
        except StaleWriteError as e:
            logger.warning(f"Record {record_id} was changed elsewhere, abandoning it: {e}")
            # 只恢复状态字段，其余字段保留对方的修改；不计入 current
            self._reset_to_waiting(record_id)
            self._report.reset += 1
            self._notify_finished(state.url, None)
            return
        except Exception as e:
            logger.exception(f"Unexpected error while processing {state.url}")
            current = self.store.get(record_id)
            stage = ErrorStage.INITIALIZATION
            if current is not None:
                stage = STATUS_STAGE.get(current.status, stage)
            details = make_details(ErrorKind.UNKNOWN, stage, str(e) or e.__class__.__name__)
            outcome = self._fail(state, RecordStatus.FAILED, details, force=True)
        finally:
            self._active.pop(record_id, None)

        self._finish(outcome)
        self._notify_finished(state.url, outcome)

    def _finish(self, outcome: ItemOutcome, counted_as: str | None = None) -> None:
        if counted_as == "skipped":
            self._report.skipped += 1
        elif isinstance(outcome, TaskError):
            self._report.failed += 1
            self._report.errors.append(outcome)
        else:
            self._report.completed += 1
            if isinstance(outcome, TaskResult):
                self._report.results.append(outcome)
        self.progress.current += 1
        self._emit_progress()

    # ------------------------------------------------------------------
    # stage steps

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise StageCancelled()

    def _write(self, state: _ItemState, patch: dict, force: bool = False) -> AnalysisRecord | None:
        expected = None if force else state.version
        record = self.store.update(state.record_id, patch, expected_version=expected)
        if record is None:
            if force:
                return None
            raise StaleWriteError(state.record_id, state.version, -1)
        state.version = record.version
        return record

    def _begin_stage(self, state: _ItemState, status: RecordStatus, patch: dict | None = None) -> None:
        """Pre-call check, status change and registration of the abort handle."""
        self._check_cancelled()
        self._write(state, {"status": status, **(patch or {})})
        self._active[state.record_id] = asyncio.current_task()
        self.progress.stage = status.value
        self.progress.current_url = state.url

    def _end_stage(self, state: _ItemState) -> None:
        self._active.pop(state.record_id, None)

    async def _crawl(self, state: _ItemState) -> CrawledContent | TaskError:
        patch: dict = {"error": None, "error_details": None}
        if not state.keep_result:
            patch["result"] = ResultLabel.PENDING
        self._begin_stage(state, RecordStatus.CRAWLING, patch)
        if self.on_item_started:
            self.on_item_started(state.url)
        crawl = await self.client.crawl(state.url, self.config)
        self._end_stage(state)
        if not crawl.success or crawl.content is None:
            return self._fail(state, RecordStatus.CRAWL_FAILED, crawl.error)
        return crawl.content

    async def _crawl_item(self, state: _ItemState) -> ItemOutcome:
        content = await self._crawl(state)
        if isinstance(content, TaskError):
            return content
        stored_content = content.for_storage(self.content_char_limit)
        self._write(state, {"status": RecordStatus.COMPLETED, "crawled_content": stored_content})
        return TaskResult(url=state.url, result=ResultLabel.PENDING, crawl_data=stored_content)

    async def _analyze_item(self, state: _ItemState) -> ItemOutcome:
        content = await self._crawl(state)
        if isinstance(content, TaskError):
            return content
        stored_content = content.for_storage(self.content_char_limit)

        self._begin_stage(state, RecordStatus.ANALYZING, {"crawled_content": stored_content})
        analysis = await self.client.analyze(content, self.config)
        self._end_stage(state)
        if not analysis.success or analysis.result is None:
            return self._fail(state, RecordStatus.ANALYSIS_FAILED, analysis.error)

        result = TaskResult(
            url=state.url, result=analysis.result, reason=analysis.reason, crawl_data=stored_content
        )
        if analysis.result == ResultLabel.Y and self.config.auto_extract_info:
            self._write(state, {"result": analysis.result, "reason": analysis.reason})
            outcome = await self._extract(state, content)
            return outcome if isinstance(outcome, TaskError) else result

        self._write(
            state,
            {
                "status": RecordStatus.COMPLETED,
                "result": analysis.result,
                "reason": analysis.reason,
            },
        )
        return result

    async def _extract_item(self, state: _ItemState) -> ItemOutcome:
        record = self.store.get(state.record_id)
        content = record.crawled_content if record else None
        if content is None or not content.content:
            crawled = await self._crawl(state)
            if isinstance(crawled, TaskError):
                return crawled
            content = crawled
            self._write(state, {"crawled_content": crawled.for_storage(self.content_char_limit)})
        return await self._extract(state, content)

    async def _extract(self, state: _ItemState, content: CrawledContent) -> ItemOutcome:
        self._begin_stage(state, RecordStatus.INFO_CRAWLING, {"info_crawl_progress": 0})
        emails = await self.client.extract_emails(content, self.config)
        self._end_stage(state)

        self._begin_stage(state, RecordStatus.INFO_CRAWLING, {"info_crawl_progress": 50})
        company = await self.client.extract_company_info(content, self.config)
        self._end_stage(state)

        patch: dict = {}
        if emails.success:
            patch["emails"] = emails.emails
        if company.success:
            patch["company_info"] = company.company_info
        failure = emails.error if not emails.success else company.error if not company.success else None
        if failure is not None:
            if patch:
                self._write(state, patch)
            return self._fail(state, RecordStatus.INFO_CRAWL_FAILED, failure)

        self._write(
            state,
            {
                **patch,
                "status": RecordStatus.COMPLETED,
                "has_info_crawled": True,
                "info_crawl_progress": 100,
            },
        )
        return None

    # ------------------------------------------------------------------
    # outcomes

    def _fail(
        self,
        state: _ItemState,
        status: RecordStatus,
        details: ErrorDetails | None,
        force: bool = False,
    ) -> TaskError:
        if details is None:
            stage = STATUS_STAGE.get(status, ErrorStage.INITIALIZATION)
            details = make_details(ErrorKind.UNKNOWN, stage, "Unknown error")
        patch: dict = {"status": status, "error": details.message, "error_details": details}
        if not state.keep_result and status != RecordStatus.INFO_CRAWL_FAILED:
            patch["result"] = ResultLabel.ERROR
        self._write(state, patch, force=force)
        logger.warning(f"{state.url} -> {status.value}: {details.message}")

        if self.journal is not None:
            self.journal.append(
                FailedEntryCreate(
                    url=state.url,
                    stage=details.stage.value,
                    error_type=details.type.value,
                    error_message=details.message,
                    response_data={"status_code": details.status_code} if details.status_code else None,
                    config=self.config.public(),
                )
            )
        return TaskError(
            url=state.url,
            type=details.type,
            stage=details.stage,
            message=details.message,
            status_code=details.status_code,
            retryable=details.retryable,
        )

    def _reset_to_waiting(self, record_id: str) -> None:
        record = self.store.get(record_id)
        if record is None or record.status not in IN_FLIGHT_STATUSES:
            return
        self.store.update(record_id, {"status": RecordStatus.WAITING, "info_crawl_progress": None})

    def _notify_finished(self, url: str, outcome: ItemOutcome) -> None:
        if self.on_item_finished:
            self.on_item_finished(url, outcome)

    def _emit_progress(self) -> None:
        if self.on_progress:
            self.on_progress(self.progress.model_copy())
