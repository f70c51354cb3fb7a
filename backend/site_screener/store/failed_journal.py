import logging
import threading
from collections import deque

from pydantic import ValidationError

from site_screener.core.config import settings
from site_screener.core.paths import FAILED_DATA_FILE
from site_screener.models import FailedEntry, FailedEntryCreate
from site_screener.store.backends import DocumentBackend, JsonFileBackend, MemoryBackend

logger = logging.getLogger(__name__)


class FailedJournal:
    """
    Audit log of failed items, kept apart from the record store.

    Bounded: once ``limit`` entries are stored the oldest entry is dropped for
    every new one.
    """

    def __init__(
        self,
        backend: DocumentBackend | None = None,
        limit: int = settings.FAILED_JOURNAL_LIMIT,
    ):
        self.backend = backend or MemoryBackend()
        self.limit = limit
        self._lock = threading.Lock()
        self._entries: deque[FailedEntry] = deque(maxlen=limit)
        for raw in self.backend.load():
            try:
                self._entries.append(FailedEntry.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable failed entry: {e}")

    @classmethod
    def from_settings(cls) -> "FailedJournal":
        if settings.use_memory_store:
            return cls(MemoryBackend())
        return cls(JsonFileBackend(FAILED_DATA_FILE))

    def _persist(self) -> None:
        self.backend.save([entry.model_dump(mode="json") for entry in self._entries])

    def entries(self) -> list[FailedEntry]:
        with self._lock:
            return list(self._entries)

    def append(self, entry_in: FailedEntryCreate) -> FailedEntry:
        entry = FailedEntry.model_validate(entry_in.model_dump())
        with self._lock:
            self._entries.append(entry)
            self._persist()
        logger.info(f"Failed entry recorded for {entry.url} at stage {entry.stage}")
        return entry

    def delete(self, entry_id: str) -> bool:
        with self._lock:
            for entry in self._entries:
                if entry.id == entry_id:
                    self._entries.remove(entry)
                    self._persist()
                    return True
        return False

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._persist()
        return removed

    def __len__(self) -> int:
        return len(self._entries)
