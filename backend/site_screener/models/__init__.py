from sqlmodel import SQLModel

from .analysis_config import (
    AnalysisConfig,
    AntiDetectionSettings,
    ConcurrencySettings,
    ProxyConfig,
    ProxySettings,
)
from .analysis_record import (
    FAILED_STATUSES,
    IN_FLIGHT_STATUSES,
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    AnalysisRecord,
    AnalysisRecordsPublic,
    AnalysisRecordUpdate,
    BackgroundTaskLink,
    CompanyInfo,
    CrawledContent,
    CrawledPage,
    EmailInfo,
    ErrorDetails,
    ErrorKind,
    ErrorStage,
    PendingUrlsPublic,
    RecordsDelete,
    RecordsDeleted,
    RecordStatus,
    ResultLabel,
    UrlsAdded,
    UrlsCreate,
)
from .background_task import (
    ACTIVE_TASK_STATUSES,
    FINISHED_TASK_STATUSES,
    BackgroundTask,
    BackgroundTaskCreate,
    BackgroundTaskPublic,
    BackgroundTasksPublic,
    SnapshotSummary,
    TaskCreated,
    TaskError,
    TaskProgress,
    TaskResult,
    TaskResultsPublic,
    TaskSnapshot,
    TaskState,
    TaskStatus,
    TaskSummary,
    TaskType,
)
from .failed_entry import FailedEntriesPublic, FailedEntry, FailedEntryCreate
from .message import Message
from .run import AnalysisStart, BatchReport, ExtractionStart, RunProgress, RunStarted
from .stage import (
    AnalyzeRequest,
    AnalyzeResponse,
    CompanyInfoResponse,
    CrawlRequest,
    CrawlResponse,
    EmailsResponse,
    ExtractRequest,
)
