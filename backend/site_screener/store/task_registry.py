import logging
import threading

from site_screener.core.config import settings
from site_screener.core.paths import TASK_REGISTRY_FILE
from site_screener.store.backends import DocumentBackend, JsonFileBackend, MemoryBackend

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Ids of background tasks being monitored, kept so a restart can resume them."""

    def __init__(self, backend: DocumentBackend | None = None):
        self.backend = backend or MemoryBackend()
        self._lock = threading.Lock()
        self._task_ids: list[str] = [str(tid) for tid in self.backend.load()]

    @classmethod
    def from_settings(cls) -> "TaskRegistry":
        if settings.use_memory_store:
            return cls(MemoryBackend())
        return cls(JsonFileBackend(TASK_REGISTRY_FILE))

    def add(self, task_id: str) -> None:
        with self._lock:
            if task_id in self._task_ids:
                return
            self._task_ids.append(task_id)
            self.backend.save(list(self._task_ids))

    def remove(self, task_id: str) -> None:
        with self._lock:
            if task_id not in self._task_ids:
                return
            self._task_ids.remove(task_id)
            self.backend.save(list(self._task_ids))

    def task_ids(self) -> list[str]:
        with self._lock:
            return list(self._task_ids)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._task_ids
