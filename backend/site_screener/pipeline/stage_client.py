"""
Stage Client

One external call per pipeline stage: crawl a site, classify the crawled
content, extract emails, extract company information. Every call returns a
response value with ``success`` set; failures are described by ErrorDetails
and never raised. Each call enforces its own timeout; cancelling the awaiting
task aborts the call.
"""
import asyncio
import itertools
import logging
import random

import httpx
from fake_useragent import UserAgent
from openai import AsyncOpenAI

from site_screener.core.config import settings
from site_screener.models import (
    AnalysisConfig,
    AnalyzeResponse,
    CompanyInfoResponse,
    CrawledContent,
    CrawledPage,
    CrawlResponse,
    EmailsResponse,
    ErrorKind,
    ErrorStage,
    ProxyConfig,
)
from site_screener.pipeline.ai_parsing import (
    parse_classification,
    parse_company_info,
    parse_emails,
)
from site_screener.pipeline.browser import GlobalBrowserManager
from site_screener.pipeline.errors import (
    StageFailure,
    classify_exception,
    make_details,
    status_details,
    validate_config,
)
from site_screener.pipeline.html_cleaner import HtmlCleaner
from site_screener.pipeline.prompts import (
    CLASSIFY_SYSTEM_PROMPT,
    EXTRACT_SYSTEM_PROMPT,
    build_classify_prompt,
    build_extract_prompt,
    content_for_extraction,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def get_headers(user_agent: str) -> dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9,zh-CN;q=0.8",
        "Connection": "keep-alive",
        "Upgrade-Insecure-Requests": "1",
        "Cache-Control": "max-age=0",
    }


def chat_base_url(api_url: str) -> str:
    # 配置里可能填的是完整的 /chat/completions 地址
    base = api_url.strip().rstrip("/")
    if base.endswith("/chat/completions"):
        base = base[: -len("/chat/completions")]
    return base


class StageClient:
    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        crawl_timeout: float = settings.CRAWL_TIMEOUT,
        analyze_timeout: float = settings.ANALYZE_TIMEOUT,
        extract_timeout: float = settings.EXTRACT_TIMEOUT,
        max_pages: int = settings.CRAWL_MAX_PAGES,
        content_char_limit: int = settings.AI_CONTENT_CHAR_LIMIT,
        sleep=asyncio.sleep,
    ):
        # transport 仅用于测试时注入 httpx.MockTransport
        self.transport = transport
        self.crawl_timeout = crawl_timeout
        self.analyze_timeout = analyze_timeout
        self.extract_timeout = extract_timeout
        self.max_pages = max_pages
        self.content_char_limit = content_char_limit
        self._sleep = sleep
        self._ua: UserAgent | None = None
        self._proxy_counter = itertools.count()

    # ------------------------------------------------------------------
    # anti-detection helpers

    def pick_user_agent(self, config: AnalysisConfig) -> str:
        anti = config.anti_detection_settings
        if not (anti.enabled and anti.random_user_agent):
            return DEFAULT_USER_AGENT
        if self._ua is None:
            self._ua = UserAgent()
        return self._ua.random

    def pick_proxy(self, config: AnalysisConfig) -> ProxyConfig | None:
        proxy_settings = config.proxy_settings
        if not proxy_settings.enabled or not proxy_settings.proxies:
            return None
        proxies = proxy_settings.proxies
        if proxy_settings.strategy == "random":
            return random.choice(proxies)
        if proxy_settings.strategy == "concurrent":
            proxies = proxies[: max(1, proxy_settings.max_concurrent_proxies)]
        return proxies[next(self._proxy_counter) % len(proxies)]

    async def _random_delay(self, config: AnalysisConfig) -> None:
        anti = config.anti_detection_settings
        if not (anti.enabled and anti.random_delay):
            return
        low, high = sorted((anti.min_delay, anti.max_delay))
        await self._sleep(random.uniform(low, high) / 1000)

    # ------------------------------------------------------------------
    # crawl

    async def _fetch(
        self,
        url: str,
        user_agent: str,
        proxy: ProxyConfig | None,
        use_browser: bool,
        timeout: float,
    ) -> tuple[int, str, str]:
        if use_browser:
            status, html = await GlobalBrowserManager.render_html(url, user_agent, timeout, proxy)
            return status, html, url
        async with httpx.AsyncClient(
            transport=self.transport,
            proxy=proxy.url if proxy else None,
            timeout=timeout,
            follow_redirects=True,
            headers=get_headers(user_agent),
        ) as http_client:
            resp = await http_client.get(url)
            return resp.status_code, resp.text, str(resp.url)

    async def _crawl(self, url: str, config: AnalysisConfig, timeout: float) -> CrawlResponse:
        await self._random_delay(config)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        user_agent = self.pick_user_agent(config)
        proxy = self.pick_proxy(config)
        use_browser = (
            config.anti_detection_settings.enabled
            and config.anti_detection_settings.use_headless_browser
        )

        async with asyncio.timeout_at(deadline):
            status, html, final_url = await self._fetch(url, user_agent, proxy, use_browser, timeout)
        if status >= 400:
            return CrawlResponse(
                success=False,
                url=url,
                status_code=status,
                error=status_details(status, ErrorStage.CRAWLING),
            )

        home = HtmlCleaner.summarize(html, self.content_char_limit)
        pages = [CrawledPage(url=final_url, title=home.title, content=home.text, type="home")]
        footer = home.footer

        # 附属页面只用首页剩余的时间预算，超时的页面直接丢弃
        for page_type, link in HtmlCleaner.find_related_links(html, final_url, self.max_pages - 1):
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Crawl time budget used up, skipping remaining pages of {url}")
                break
            try:
                async with asyncio.timeout(remaining):
                    sub_status, sub_html, sub_url = await self._fetch(
                        link, user_agent, proxy, use_browser, remaining
                    )
            except Exception as e:
                logger.warning(f"Skipping {page_type} page {link}: {e}")
                continue
            if sub_status >= 400:
                logger.warning(f"Skipping {page_type} page {link}: HTTP {sub_status}")
                continue
            summary = HtmlCleaner.summarize(sub_html, self.content_char_limit)
            pages.append(CrawledPage(url=sub_url, title=summary.title, content=summary.text, type=page_type))
            footer = footer or summary.footer

        combined = "\n\n".join(
            page.content if page.type == "home" else f"[{page.type}] {page.content}"
            for page in pages
            if page.content
        )
        content = CrawledContent(
            title=home.title,
            description=home.description,
            content=combined[: self.content_char_limit],
            footer_content=footer,
            pages=pages,
            crawled_count=len(pages),
        )
        return CrawlResponse(success=True, url=url, content=content, status_code=status)

    async def crawl(
        self,
        url: str,
        config: AnalysisConfig | None = None,
        timeout: float | None = None,
    ) -> CrawlResponse:
        """
        Fetch the home page plus a few same-site pages and summarise them.

        ``timeout`` bounds the home page; related pages share whatever is left
        of it and are dropped when they do not make it in time.
        """
        config = config or AnalysisConfig()
        timeout = timeout or self.crawl_timeout
        try:
            return await self._crawl(url, config, timeout)
        except Exception as e:
            details = classify_exception(e, ErrorStage.CRAWLING)
            logger.warning(f"Crawl failed for {url}: {details.message}")
            return CrawlResponse(success=False, url=url, status_code=details.status_code, error=details)

    # ------------------------------------------------------------------
    # AI stages

    async def _chat(
        self,
        config: AnalysisConfig,
        system_prompt: str,
        prompt: str,
        timeout: float,
        max_tokens: int,
        temperature: float,
    ) -> str:
        http_client = httpx.AsyncClient(transport=self.transport) if self.transport else None
        async with AsyncOpenAI(
            api_key=config.api_key,
            base_url=chat_base_url(config.api_url),
            # 重试次数仅作参考，这里不做自动重试
            max_retries=0,
            timeout=timeout,
            http_client=http_client,
        ) as client:
            response = await client.chat.completions.create(
                model=config.ai_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        if not response.choices or not response.choices[0].message.content:
            raise StageFailure("Empty response from AI")
        return response.choices[0].message.content

    async def analyze(
        self,
        content: CrawledContent,
        config: AnalysisConfig,
        timeout: float | None = None,
    ) -> AnalyzeResponse:
        """Classify crawled content as a target customer (Y) or not (N)."""
        timeout = timeout or self.analyze_timeout
        try:
            validate_config(config)
            if not content.content:
                return AnalyzeResponse(
                    success=False,
                    error=make_details(
                        ErrorKind.AI, ErrorStage.AI_ANALYSIS, "No content to analyze", retryable=False
                    ),
                )
            trimmed = content.model_copy(update={"content": content.content[: self.content_char_limit]})
            prompt = build_classify_prompt(config.prompt_template, trimmed)
            async with asyncio.timeout(timeout):
                answer = await self._chat(
                    config, CLASSIFY_SYSTEM_PROMPT, prompt, timeout, max_tokens=500, temperature=0.3
                )
        except Exception as e:
            details = classify_exception(e, ErrorStage.AI_ANALYSIS)
            logger.warning(f"Analysis failed: {details.message}")
            return AnalyzeResponse(success=False, error=details)

        classification = parse_classification(answer)
        return AnalyzeResponse(success=True, result=classification.result, reason=classification.reason)

    async def _extract(
        self,
        template: str,
        content: CrawledContent,
        config: AnalysisConfig,
        timeout: float | None,
    ) -> str:
        validate_config(config)
        text = content_for_extraction(content, self.content_char_limit)
        prompt = build_extract_prompt(template, text)
        timeout = timeout or self.extract_timeout
        async with asyncio.timeout(timeout):
            return await self._chat(
                config, EXTRACT_SYSTEM_PROMPT, prompt, timeout, max_tokens=1000, temperature=0.1
            )

    async def extract_emails(
        self,
        content: CrawledContent,
        config: AnalysisConfig,
        timeout: float | None = None,
    ) -> EmailsResponse:
        try:
            answer = await self._extract(config.email_crawl_prompt, content, config, timeout)
        except Exception as e:
            details = classify_exception(e, ErrorStage.INFO_EXTRACTION)
            logger.warning(f"Email extraction failed: {details.message}")
            return EmailsResponse(success=False, error=details)
        return EmailsResponse(success=True, emails=parse_emails(answer))

    async def extract_company_info(
        self,
        content: CrawledContent,
        config: AnalysisConfig,
        timeout: float | None = None,
    ) -> CompanyInfoResponse:
        try:
            answer = await self._extract(config.company_name_prompt, content, config, timeout)
        except Exception as e:
            details = classify_exception(e, ErrorStage.INFO_EXTRACTION)
            logger.warning(f"Company info extraction failed: {details.message}")
            return CompanyInfoResponse(success=False, error=details)
        return CompanyInfoResponse(success=True, company_info=parse_company_info(answer))
