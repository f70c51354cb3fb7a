import uuid
from datetime import datetime
from enum import Enum

from sqlmodel import Field, SQLModel

from .analysis_config import AnalysisConfig
from .analysis_record import CrawledContent, ErrorKind, ErrorStage, ResultLabel


class TaskType(str, Enum):
    ANALYZE = "analyze"
    CRAWL = "crawl"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RUNNING})
FINISHED_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class BackgroundTask(SQLModel, table=True):
    __tablename__ = "background_task"
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    type: str = Field(default=TaskType.ANALYZE.value)
    status: str = Field(default=TaskStatus.PENDING.value)  # pending、running、completed、failed
    progress_current: int = Field(default=0)
    progress_total: int = Field(default=0)
    results_count: int = Field(default=0)
    errors_count: int = Field(default=0)
    cancel_requested: bool = Field(default=False)
    error: str | None = Field(default=None)
    # JSON 格式的 URL 列表与运行配置
    urls_json: str = Field(default="[]")
    config_json: str | None = Field(default=None)
    # JSON 格式的运行状态：正在处理的 URL、结果、错误
    task_state: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)


class TaskProgress(SQLModel):
    current: int = 0
    total: int = 0


class TaskResult(SQLModel):
    url: str
    result: ResultLabel
    reason: str = ""
    crawl_data: CrawledContent | None = None


class TaskError(SQLModel):
    url: str
    type: ErrorKind = ErrorKind.UNKNOWN
    stage: ErrorStage = ErrorStage.CRAWLING
    message: str
    status_code: int | None = None
    retryable: bool = True


class TaskState(SQLModel):
    currently_processing: list[str] = []
    results: list[TaskResult] = []
    errors: list[TaskError] = []


class SnapshotSummary(SQLModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    remaining: int = 0


class TaskSnapshot(SQLModel):
    task_id: str
    status: TaskStatus
    progress: TaskProgress
    currently_processing: list[str] = []
    recent_results: list[TaskResult] = []
    recent_errors: list[TaskError] = []
    summary: SnapshotSummary = Field(default_factory=SnapshotSummary)


class TaskResultsPublic(SQLModel):
    task_id: str
    status: TaskStatus
    results: list[TaskResult] = []
    errors: list[TaskError] = []


class BackgroundTaskPublic(SQLModel):
    id: str
    type: TaskType
    status: TaskStatus
    progress: TaskProgress
    url_count: int
    results_count: int
    errors_count: int
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class TaskSummary(SQLModel):
    total: int = 0
    running: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0


class BackgroundTasksPublic(SQLModel):
    data: list[BackgroundTaskPublic]
    count: int
    summary: TaskSummary


class BackgroundTaskCreate(SQLModel):
    type: TaskType = TaskType.ANALYZE
    urls: list[str]
    config: AnalysisConfig | None = None


class TaskCreated(SQLModel):
    task_id: str
