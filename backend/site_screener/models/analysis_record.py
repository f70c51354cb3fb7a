import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordStatus(str, Enum):
    WAITING = "waiting"
    CRAWLING = "crawling"
    ANALYZING = "analyzing"
    INFO_CRAWLING = "info-crawling"
    COMPLETED = "completed"
    FAILED = "failed"
    CRAWL_FAILED = "crawl-failed"
    ANALYSIS_FAILED = "analysis-failed"
    INFO_CRAWL_FAILED = "info-crawl-failed"


# 正在处理中的状态，取消时会被重置为 waiting
IN_FLIGHT_STATUSES = frozenset(
    {RecordStatus.CRAWLING, RecordStatus.ANALYZING, RecordStatus.INFO_CRAWLING}
)
FAILED_STATUSES = frozenset(
    {
        RecordStatus.FAILED,
        RecordStatus.CRAWL_FAILED,
        RecordStatus.ANALYSIS_FAILED,
        RecordStatus.INFO_CRAWL_FAILED,
    }
)
TERMINAL_STATUSES = FAILED_STATUSES | {RecordStatus.COMPLETED}
# 可以重新提交分析的状态
PENDING_STATUSES = FAILED_STATUSES | {RecordStatus.WAITING}


class ResultLabel(str, Enum):
    Y = "Y"
    N = "N"
    PENDING = "PENDING"
    ERROR = "ERROR"


class ErrorKind(str, Enum):
    CRAWL = "crawl_error"
    AI = "ai_error"
    NETWORK = "network_error"
    TIMEOUT = "timeout_error"
    CONFIG = "config_error"
    UNKNOWN = "unknown_error"


class ErrorStage(str, Enum):
    CRAWLING = "crawling"
    AI_ANALYSIS = "ai_analysis"
    INFO_EXTRACTION = "info_extraction"
    INITIALIZATION = "initialization"


class CrawledPage(SQLModel):
    url: str
    title: str = ""
    content: str = ""
    # home, about, contact, privacy, terms, other
    type: str = "other"


class CrawledContent(SQLModel):
    title: str | None = None
    description: str | None = None
    content: str | None = None
    footer_content: str | None = None
    pages: list[CrawledPage] | None = None
    crawled_count: int | None = None

    def for_storage(self, char_limit: int) -> "CrawledContent":
        """Return a copy that is safe to persist: text capped, page list dropped."""
        return CrawledContent(
            title=self.title,
            description=self.description,
            content=self.content[:char_limit] if self.content is not None else None,
            footer_content=(
                self.footer_content[:char_limit] if self.footer_content is not None else None
            ),
            pages=None,
            crawled_count=self.crawled_count,
        )


class CompanyInfo(SQLModel):
    names: list[str] = []
    founder_names: list[str] = []
    brand_names: list[str] = []
    full_name: str = ""
    primary_name: str = ""


class EmailInfo(SQLModel):
    email: str
    source: str = ""
    owner_name: str | None = None
    # contact, support, sales, info, personal, other
    type: str = "other"


class ErrorDetails(SQLModel):
    type: ErrorKind = ErrorKind.UNKNOWN
    stage: ErrorStage = ErrorStage.INITIALIZATION
    message: str
    status_code: int | None = None
    retryable: bool = False


class BackgroundTaskLink(SQLModel):
    task_id: str
    started_at: datetime = Field(default_factory=utcnow)
    can_run_in_background: bool = True
    priority: int = 0


class AnalysisRecord(SQLModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    url: str
    status: RecordStatus = RecordStatus.WAITING
    result: ResultLabel = ResultLabel.PENDING
    reason: str = ""
    company_info: CompanyInfo | None = None
    emails: list[EmailInfo] | None = None
    crawled_content: CrawledContent | None = None
    error: str | None = None
    error_details: ErrorDetails | None = None
    has_info_crawled: bool = False
    info_crawl_progress: int | None = None
    background_task: BackgroundTaskLink | None = None
    # 每次有效修改都会递增，用来拒绝过期的写入
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# 通过 API 更新时接收的属性，全部可选
class AnalysisRecordUpdate(SQLModel):
    status: RecordStatus | None = None
    result: ResultLabel | None = None
    reason: str | None = None
    company_info: CompanyInfo | None = None
    emails: list[EmailInfo] | None = None
    crawled_content: CrawledContent | None = None
    error: str | None = None
    error_details: ErrorDetails | None = None
    has_info_crawled: bool | None = None
    info_crawl_progress: int | None = None
    background_task: BackgroundTaskLink | None = None

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class AnalysisRecordsPublic(SQLModel):
    data: list[AnalysisRecord]
    count: int
    page: int
    limit: int
    has_next: bool
    has_prev: bool


class UrlsCreate(SQLModel):
    urls: list[str]


class UrlsAdded(SQLModel):
    added: int
    total: int
    invalid: list[str] = []


class RecordsDelete(SQLModel):
    ids: list[str] | None = None


class RecordsDeleted(SQLModel):
    deleted: int
    remaining: int


class PendingUrlsPublic(SQLModel):
    urls: list[str]
    count: int
