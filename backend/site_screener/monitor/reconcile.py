"""
Result Reconciliation

Merges background task snapshots into the record store. URLs the store has not
seen yet are inserted before any update is attempted, and every update is a
whole-field merge through RecordStore.update, so applying the same snapshot
twice leaves the store exactly as applying it once.
"""
import logging
from collections.abc import Iterable

from pydantic import BaseModel

from site_screener.core.config import settings
from site_screener.models import (
    AnalysisRecord,
    BackgroundTaskLink,
    ErrorDetails,
    RecordStatus,
    ResultLabel,
    TaskError,
    TaskResult,
    TaskResultsPublic,
    TaskSnapshot,
)
from site_screener.store.record_store import RecordStore, normalize_url

logger = logging.getLogger(__name__)


class ReconcileSummary(BaseModel):
    inserted: int = 0
    updated: int = 0
    skipped: int = 0


class ResultReconciler:
    def __init__(self, store: RecordStore, char_limit: int = settings.CRAWLED_CONTENT_CHAR_LIMIT):
        self.store = store
        self.char_limit = char_limit

    def apply_snapshot(self, snapshot: TaskSnapshot) -> ReconcileSummary:
        return self._apply(
            snapshot.task_id,
            snapshot.currently_processing,
            snapshot.recent_results,
            snapshot.recent_errors,
        )

    def apply_results(self, results: TaskResultsPublic) -> ReconcileSummary:
        return self._apply(results.task_id, [], results.results, results.errors)

    def _apply(
        self,
        task_id: str,
        processing: Iterable[str],
        results: Iterable[TaskResult],
        errors: Iterable[TaskError],
    ) -> ReconcileSummary:
        processing = list(processing)
        results = list(results)
        errors = list(errors)
        summary = ReconcileSummary()

        # 先插入本地不存在的 URL，再做更新
        urls = processing + [r.url for r in results] + [e.url for e in errors]
        missing = [u for u in dict.fromkeys(urls) if self._find(u) is None]
        if missing:
            summary.inserted = self.store.add_urls(missing).added

        for url in processing:
            record = self._find(url)
            if record is None:
                summary.skipped += self._skip(url)
                continue
            patch = self._link_patch(record, task_id)
            if record.status == RecordStatus.WAITING:
                patch["status"] = RecordStatus.ANALYZING
            summary.updated += self._update(record, patch)

        for result in results:
            record = self._find(result.url)
            if record is None:
                summary.skipped += self._skip(result.url)
                continue
            patch = {
                **self._link_patch(record, task_id),
                "status": RecordStatus.COMPLETED,
                "result": result.result,
                "reason": result.reason,
                "error": None,
                "error_details": None,
            }
            if result.crawl_data is not None:
                patch["crawled_content"] = result.crawl_data.for_storage(self.char_limit)
            summary.updated += self._update(record, patch)

        for error in errors:
            record = self._find(error.url)
            if record is None:
                summary.skipped += self._skip(error.url)
                continue
            patch = {
                **self._link_patch(record, task_id),
                "status": RecordStatus.FAILED,
                "result": ResultLabel.ERROR,
                "error": error.message,
                "error_details": ErrorDetails(
                    type=error.type,
                    stage=error.stage,
                    message=error.message,
                    status_code=error.status_code,
                    retryable=error.retryable,
                ),
            }
            summary.updated += self._update(record, patch)

        if summary.inserted or summary.updated:
            logger.info(
                f"[{task_id}] Reconciled snapshot: {summary.inserted} inserted, "
                f"{summary.updated} updated, {summary.skipped} skipped"
            )
        return summary

    def _find(self, url: str) -> AnalysisRecord | None:
        normalized = normalize_url(url)
        return self.store.find_by_url(normalized) if normalized else None

    def _skip(self, url: str) -> int:
        logger.warning(f"No local record for {url}, skipping")
        return 1

    def _link_patch(self, record: AnalysisRecord, task_id: str) -> dict:
        if record.background_task and record.background_task.task_id == task_id:
            return {}
        return {"background_task": BackgroundTaskLink(task_id=task_id)}

    def _update(self, record: AnalysisRecord, patch: dict) -> int:
        if not patch:
            return 0
        updated = self.store.update(record.id, patch)
        return int(updated is not None and updated.version != record.version)
