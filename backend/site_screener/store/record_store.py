"""
Record Store

Holds one AnalysisRecord per submitted URL. Every mutation goes through this
object: the coordinator, the background task monitor and the API routes share
one instance and never touch records directly.
"""
import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from site_screener.core.config import settings
from site_screener.core.paths import ANALYSIS_RESULTS_FILE
from site_screener.models import (
    PENDING_STATUSES,
    AnalysisRecord,
    AnalysisRecordsPublic,
    UrlsAdded,
)
from site_screener.models.analysis_record import utcnow
from site_screener.store.backends import DocumentBackend, JsonFileBackend, MemoryBackend

logger = logging.getLogger(__name__)

# 只能由存储自身维护的字段
PROTECTED_FIELDS = frozenset({"id", "url", "created_at", "updated_at", "version"})


class StaleWriteError(Exception):
    """Raised when a writer's expected version no longer matches the record."""

    def __init__(self, record_id: str, expected: int, actual: int):
        super().__init__(
            f"Record {record_id} is at version {actual}, write expected {expected}"
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


def normalize_url(raw: str) -> str | None:
    """
    Trim the input and add https:// when no scheme is given.

    Returns None for blank input or anything that does not parse to a URL with a host.
    """
    url = raw.strip()
    if not url:
        return None
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    if any(ch.isspace() for ch in url):
        return None
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return url


class RecordStore:
    def __init__(
        self,
        backend: DocumentBackend | None = None,
        max_records: int = settings.MAX_RECORDS,
        retention_days: int = settings.RECORD_RETENTION_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend or MemoryBackend()
        self.max_records = max_records
        self.retention_days = retention_days
        self.clock = clock
        self._lock = threading.RLock()
        self._records: dict[str, AnalysisRecord] = {}
        self._ids_by_url: dict[str, str] = {}
        self._load()

    @classmethod
    def from_settings(cls) -> "RecordStore":
        if settings.use_memory_store:
            logger.info("Record store: in-memory backend")
            return cls(MemoryBackend())
        logger.info(f"Record store: JSON file {ANALYSIS_RESULTS_FILE}")
        return cls(JsonFileBackend(ANALYSIS_RESULTS_FILE))

    def _load(self) -> None:
        for raw in self.backend.load():
            try:
                record = AnalysisRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable stored record: {e}")
                continue
            if record.url in self._ids_by_url:
                continue
            self._records[record.id] = record
            self._ids_by_url[record.url] = record.id

    def _persist(self) -> None:
        self.backend.save(
            [record.model_dump(mode="json") for record in self._records.values()]
        )

    def _insert(self, record: AnalysisRecord) -> None:
        self._records[record.id] = record
        self._ids_by_url[record.url] = record.id

    def _remove(self, record_id: str) -> AnalysisRecord | None:
        record = self._records.pop(record_id, None)
        if record is not None:
            self._ids_by_url.pop(record.url, None)
        return record

    def _enforce_cap(self) -> int:
        overflow = len(self._records) - self.max_records
        if overflow <= 0:
            return 0
        # 超出上限时按创建时间淘汰最旧的记录
        oldest = sorted(self._records.values(), key=lambda r: r.created_at)[:overflow]
        for record in oldest:
            self._remove(record.id)
        logger.info(f"Record cap {self.max_records} reached, evicted {overflow} records")
        return overflow

    def _purge_expired_locked(self) -> int:
        if self.retention_days <= 0:
            return 0
        cutoff = self.clock() - timedelta(days=self.retention_days)
        expired = [r.id for r in self._records.values() if r.created_at < cutoff]
        for record_id in expired:
            self._remove(record_id)
        if expired:
            logger.info(f"Purged {len(expired)} records older than {self.retention_days} days")
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)

    def count(self) -> int:
        return len(self._records)

    def add_urls(self, urls: Iterable[str]) -> UrlsAdded:
        """Append a waiting record for every new URL; existing URLs are skipped."""
        added = 0
        invalid: list[str] = []
        with self._lock:
            for raw in urls:
                if not raw or not raw.strip():
                    continue
                url = normalize_url(raw)
                if url is None:
                    invalid.append(raw.strip())
                    continue
                if url in self._ids_by_url:
                    continue
                now = self.clock()
                self._insert(AnalysisRecord(url=url, created_at=now, updated_at=now))
                added += 1
            if added:
                self._enforce_cap()
                self._persist()
            total = len(self._records)
        if invalid:
            logger.warning(f"Rejected {len(invalid)} invalid URLs")
        return UrlsAdded(added=added, total=total, invalid=invalid)

    def all(self) -> list[AnalysisRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def get(self, record_id: str) -> AnalysisRecord | None:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def get_many(self, record_ids: Iterable[str]) -> list[AnalysisRecord]:
        with self._lock:
            return [
                self._records[rid].model_copy(deep=True)
                for rid in record_ids
                if rid in self._records
            ]

    def find_by_url(self, url: str) -> AnalysisRecord | None:
        with self._lock:
            record_id = self._ids_by_url.get(url)
            return self.get(record_id) if record_id else None

    def update(
        self,
        record_id: str,
        patch: dict[str, Any],
        expected_version: int | None = None,
    ) -> AnalysisRecord | None:
        """
        Merge ``patch`` into one record.

        Returns the stored record, or None when the id is unknown. A patch that
        changes nothing leaves version and updated_at untouched. When
        ``expected_version`` is given and differs from the stored version the
        write is rejected with StaleWriteError.
        """
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                raise StaleWriteError(record_id, expected_version, current.version)

            changes = {k: v for k, v in patch.items() if k not in PROTECTED_FIELDS}
            merged = AnalysisRecord.model_validate({**current.model_dump(), **changes})
            if merged.model_dump() == current.model_dump():
                return current.model_copy(deep=True)

            merged.version = current.version + 1
            merged.updated_at = self.clock()
            self._records[record_id] = merged
            self._persist()
            return merged.model_copy(deep=True)

    def upsert_many(self, records: Iterable[AnalysisRecord]) -> None:
        """Insert new records and replace existing ones, matched by id then by URL."""
        with self._lock:
            for incoming in records:
                existing_id = (
                    incoming.id
                    if incoming.id in self._records
                    else self._ids_by_url.get(incoming.url)
                )
                if existing_id is None:
                    self._insert(incoming.model_copy(deep=True))
                    continue
                current = self._records[existing_id]
                if incoming.url != current.url and incoming.url in self._ids_by_url:
                    logger.warning(f"Skipping upsert of {incoming.id}: URL {incoming.url} already stored")
                    continue
                replacement = incoming.model_copy(
                    update={
                        "id": current.id,
                        "created_at": current.created_at,
                        "version": current.version,
                        "updated_at": current.updated_at,
                    },
                    deep=True,
                )
                if replacement.model_dump() == current.model_dump():
                    continue
                replacement.version = current.version + 1
                replacement.updated_at = self.clock()
                self._remove(current.id)
                self._insert(replacement)
            self._enforce_cap()
            self._persist()

    def delete_many(self, record_ids: Iterable[str]) -> int:
        with self._lock:
            deleted = sum(1 for rid in set(record_ids) if self._remove(rid) is not None)
            if deleted:
                self._persist()
            return deleted

    def clear(self) -> int:
        with self._lock:
            deleted = len(self._records)
            self._records.clear()
            self._ids_by_url.clear()
            self._persist()
            return deleted

    def find_pending_urls(self) -> list[str]:
        """URLs of records that are waiting or ended in a failed status."""
        with self._lock:
            if self._purge_expired_locked():
                self._persist()
            return [r.url for r in self._records.values() if r.status in PENDING_STATUSES]

    def find_pending_ids(self) -> list[str]:
        with self._lock:
            return [r.id for r in self._records.values() if r.status in PENDING_STATUSES]

    def purge_expired(self) -> int:
        with self._lock:
            purged = self._purge_expired_locked()
            if purged:
                self._persist()
            return purged

    def list(self, page: int = 1, limit: int = 50) -> AnalysisRecordsPublic:
        page = max(1, page)
        limit = max(1, limit)
        with self._lock:
            if self._purge_expired_locked():
                self._persist()
            records = list(self._records.values())
        start = (page - 1) * limit
        data = [r.model_copy(deep=True) for r in records[start : start + limit]]
        return AnalysisRecordsPublic(
            data=data,
            count=len(records),
            page=page,
            limit=limit,
            has_next=start + limit < len(records),
            has_prev=page > 1,
        )

