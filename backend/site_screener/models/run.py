from typing import Literal

from sqlmodel import SQLModel

from .analysis_config import AnalysisConfig
from .background_task import TaskError, TaskResult


class RunProgress(SQLModel):
    running: bool = False
    mode: Literal["analysis", "extraction", "crawl"] | None = None
    current: int = 0
    total: int = 0
    stage: str | None = None
    current_url: str | None = None
    task_id: str | None = None


class BatchReport(SQLModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    # 因取消而回到 waiting 的条目
    reset: int = 0
    skipped: int = 0
    cancelled: bool = False
    results: list[TaskResult] = []
    errors: list[TaskError] = []


class AnalysisStart(SQLModel):
    # 为空时处理所有待处理记录
    ids: list[str] | None = None
    config: AnalysisConfig | None = None


class ExtractionStart(SQLModel):
    ids: list[str] | None = None
    config: AnalysisConfig | None = None


class RunStarted(SQLModel):
    mode: Literal["foreground", "background", "none"]
    total: int
    task_id: str | None = None
