from sqlmodel import SQLModel

from .analysis_config import AnalysisConfig
from .analysis_record import CompanyInfo, CrawledContent, EmailInfo, ErrorDetails, ResultLabel


class CrawlResponse(SQLModel):
    success: bool
    url: str
    content: CrawledContent | None = None
    status_code: int | None = None
    error: ErrorDetails | None = None


class AnalyzeResponse(SQLModel):
    success: bool
    result: ResultLabel | None = None
    reason: str = ""
    error: ErrorDetails | None = None


class EmailsResponse(SQLModel):
    success: bool
    emails: list[EmailInfo] = []
    error: ErrorDetails | None = None


class CompanyInfoResponse(SQLModel):
    success: bool
    company_info: CompanyInfo | None = None
    error: ErrorDetails | None = None


# 单独调用各阶段接口时的请求体
class CrawlRequest(SQLModel):
    url: str
    config: AnalysisConfig | None = None


class AnalyzeRequest(SQLModel):
    config: AnalysisConfig
    crawled_content: CrawledContent | None = None


class ExtractRequest(SQLModel):
    config: AnalysisConfig
    crawled_content: CrawledContent
