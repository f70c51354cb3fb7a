"""
Background Job Control clients.

The monitor talks to background jobs through the JobControl protocol. The
in-process implementation calls the task manager directly; the HTTP one talks
to the ``/background-tasks`` routes of a (possibly remote) server.
"""
import logging
from typing import Protocol

import httpx
from sqlmodel import Session

from site_screener.models import (
    AnalysisConfig,
    TaskCreated,
    TaskResultsPublic,
    TaskSnapshot,
    TaskType,
)
from site_screener.worker_tasks.background import BackgroundTaskManager

logger = logging.getLogger(__name__)


class JobControl(Protocol):
    async def create(
        self, urls: list[str], config: AnalysisConfig, task_type: TaskType = TaskType.ANALYZE
    ) -> str: ...

    async def status(self, task_id: str) -> TaskSnapshot | None: ...

    async def cancel(self, task_id: str) -> bool: ...

    async def results(self, task_id: str) -> TaskResultsPublic | None: ...


class LocalJobControl:
    """Job control backed by the in-process BackgroundTaskManager."""

    def __init__(self, manager: BackgroundTaskManager):
        self.manager = manager

    async def create(
        self, urls: list[str], config: AnalysisConfig, task_type: TaskType = TaskType.ANALYZE
    ) -> str:
        with Session(self.manager.engine) as session:
            task = self.manager.create(session, urls, config, task_type)
            task_id = str(task.id)
        self.manager.launch(task_id)
        return task_id

    async def status(self, task_id: str) -> TaskSnapshot | None:
        with Session(self.manager.engine) as session:
            return self.manager.get_status(session, task_id)

    async def cancel(self, task_id: str) -> bool:
        with Session(self.manager.engine) as session:
            return self.manager.cancel(session, task_id) is not None

    async def results(self, task_id: str) -> TaskResultsPublic | None:
        with Session(self.manager.engine) as session:
            return self.manager.get_results(session, task_id)


class HttpJobControl:
    """Job control over the HTTP API, e.g. ``http://host:8000/api/v1``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"{self.base_url}/background-tasks",
            timeout=self.timeout,
            transport=self.transport,
        )

    async def create(
        self, urls: list[str], config: AnalysisConfig, task_type: TaskType = TaskType.ANALYZE
    ) -> str:
        payload = {"type": task_type.value, "urls": urls, "config": config.model_dump(mode="json")}
        async with self._client() as client:
            resp = await client.post("/", json=payload)
            resp.raise_for_status()
        return TaskCreated.model_validate(resp.json()).task_id

    async def status(self, task_id: str) -> TaskSnapshot | None:
        async with self._client() as client:
            resp = await client.get(f"/{task_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return TaskSnapshot.model_validate(resp.json())

    async def cancel(self, task_id: str) -> bool:
        async with self._client() as client:
            resp = await client.post(f"/{task_id}/cancel")
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return True

    async def results(self, task_id: str) -> TaskResultsPublic | None:
        async with self._client() as client:
            resp = await client.get(f"/{task_id}/results")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return TaskResultsPublic.model_validate(resp.json())
