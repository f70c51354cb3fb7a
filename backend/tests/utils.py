import asyncio
from collections.abc import Awaitable, Callable

from site_screener.models import (
    AnalysisConfig,
    AnalyzeResponse,
    AntiDetectionSettings,
    CompanyInfo,
    CompanyInfoResponse,
    ConcurrencySettings,
    CrawledContent,
    CrawledPage,
    CrawlResponse,
    EmailInfo,
    EmailsResponse,
    ErrorKind,
    ErrorStage,
    ResultLabel,
)
from site_screener.pipeline.errors import make_details


def make_config(**overrides) -> AnalysisConfig:
    values = {
        "api_key": "sk-test",
        "api_url": "https://ai.example.com/v1",
        "ai_model": "test-model",
        "auto_extract_info": False,
        "concurrency_settings": ConcurrencySettings(enabled=False, delay_between_requests=0),
        "anti_detection_settings": AntiDetectionSettings(enabled=False),
    }
    values.update(overrides)
    return AnalysisConfig(**values)


class StubStageClient:
    """
    Stage client double. Content titles carry the URL so analyze and extract
    calls can be told apart; every call is recorded in ``calls``.
    """

    def __init__(
        self,
        crawl_failures: dict[str, str] | None = None,
        analyze_failures: dict[str, str] | None = None,
        labels: dict[str, ResultLabel] | None = None,
        email_failures: set[str] | None = None,
        on_crawl: Callable[[str], Awaitable[None]] | None = None,
    ):
        self.crawl_failures = crawl_failures or {}
        self.analyze_failures = analyze_failures or {}
        self.labels = labels or {}
        self.email_failures = email_failures or set()
        self.on_crawl = on_crawl
        self.calls: list[tuple[str, str]] = []

    async def crawl(self, url, config=None, timeout=None) -> CrawlResponse:
        self.calls.append(("crawl", url))
        if self.on_crawl is not None:
            await self.on_crawl(url)
        await asyncio.sleep(0)
        if url in self.crawl_failures:
            return CrawlResponse(
                success=False,
                url=url,
                status_code=503,
                error=make_details(
                    ErrorKind.CRAWL, ErrorStage.CRAWLING, self.crawl_failures[url], status_code=503
                ),
            )
        content = CrawledContent(
            title=url,
            description=f"description of {url}",
            content=f"content of {url} contact sales@{url.split('//')[-1]}",
            pages=[CrawledPage(url=url, title=url, content="home", type="home")],
            crawled_count=1,
        )
        return CrawlResponse(success=True, url=url, content=content, status_code=200)

    async def analyze(self, content, config, timeout=None) -> AnalyzeResponse:
        self.calls.append(("analyze", content.title))
        await asyncio.sleep(0)
        if content.title in self.analyze_failures:
            return AnalyzeResponse(
                success=False,
                error=make_details(
                    ErrorKind.AI,
                    ErrorStage.AI_ANALYSIS,
                    self.analyze_failures[content.title],
                    status_code=500,
                ),
            )
        label = self.labels.get(content.title, ResultLabel.N)
        return AnalyzeResponse(success=True, result=label, reason=f"{label.value} because reasons")

    async def extract_emails(self, content, config, timeout=None) -> EmailsResponse:
        self.calls.append(("extract_emails", content.title))
        if content.title in self.email_failures:
            return EmailsResponse(
                success=False,
                error=make_details(ErrorKind.TIMEOUT, ErrorStage.INFO_EXTRACTION, "Request timed out"),
            )
        return EmailsResponse(
            success=True, emails=[EmailInfo(email="sales@acme.com", source="contact", type="sales")]
        )

    async def extract_company_info(self, content, config, timeout=None) -> CompanyInfoResponse:
        self.calls.append(("extract_company_info", content.title))
        return CompanyInfoResponse(
            success=True,
            company_info=CompanyInfo(names=["Acme"], full_name="Acme Ltd", primary_name="Acme"),
        )

    def stage_calls(self, stage: str) -> list[str]:
        return [url for name, url in self.calls if name == stage]
