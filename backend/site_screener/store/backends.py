"""
JSON 文档存储后端

记录、失败日志和后台任务登记都以一个 JSON 数组保存。
生产环境（只读文件系统）使用内存后端，其余环境写入 data 目录。
"""
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class DocumentBackend(Protocol):
    def load(self) -> list[Any]: ...

    def save(self, items: list[Any]) -> None: ...


class MemoryBackend:
    """Keeps the document in process memory, lost on restart."""

    def __init__(self, items: list[Any] | None = None):
        self._items: list[Any] = list(items or [])

    def load(self) -> list[Any]:
        return list(self._items)

    def save(self, items: list[Any]) -> None:
        self._items = list(items)


class JsonFileBackend:
    """Reads and writes the whole document as one JSON file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> list[Any]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {self.path}, starting empty: {e}")
            return []
        if not isinstance(data, list):
            logger.error(f"Unexpected document in {self.path}, starting empty")
            return []
        return data

    def save(self, items: list[Any]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # 写临时文件后原子替换
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(
                json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8"
            )
            os.replace(tmp_path, self.path)
