from typing import Literal

from sqlmodel import Field, SQLModel

from site_screener.core.config import settings

DEFAULT_CLASSIFY_PROMPT = """Analyze the website content below and decide whether it belongs to a target customer.

Website information:
Title: {title}
Description: {description}
Main content: {content}
Footer: {footer_content}
Crawled pages: {pages}

Judge it against these criteria:
1. Is it an official company website
2. Does it clearly describe its business
3. Does it publish contact details
4. Is the content professional and complete
5. Does it state clear company information

Reply in JSON:
{
  "result": "Y" or "N",
  "reason": "the detailed basis for the decision: site type, business scope, professionalism"
}"""

DEFAULT_COMPANY_PROMPT = """Extract company information from the website content below, ordered by priority.

Website content:
{content}

Priority (highest first):
1. The owner of the contact email address, when a clear contact email exists
2. The founder or owner of the company
3. The full legal name of the company
4. The brand name of the company

Look at "About us", "Company profile" and "Contact us" sections, titles such as CEO,
founder or general manager, and copyright or registration notices. List every candidate name.

Reply in JSON:
{
  "primaryName": "the main company name",
  "names": ["all company names by priority"],
  "founderNames": ["founder or owner names"],
  "brandNames": ["brand names"],
  "fullName": "full legal company name",
  "confidence": "confidence of the extraction (1-10)"
}"""

DEFAULT_EMAIL_PROMPT = """Extract every valid email address from the website content below and identify its owner.

Website content:
{content}

Requirements:
1. Extract all valid email addresses
2. Drop invalid ones: image file names (.png, .jpg, .jpeg, .gif, .webp, .svg), CDN addresses,
   test addresses (test@, demo@, example@) and obvious junk
3. Classify each address (contact, support, sales, info, personal, other)
4. Identify the owner's name where possible
5. Note where the address was found (footer, contact page, about page, ...)

Reply in JSON:
{
  "emails": [
    {
      "email": "address",
      "ownerName": "owner name if known",
      "type": "contact/support/sales/info/personal/other",
      "source": "where it was found"
    }
  ]
}"""


class ProxyConfig(SQLModel):
    host: str
    port: int
    username: str | None = None
    password: str | None = None
    type: Literal["socks5", "http", "https"] = "http"

    @property
    def url(self) -> str:
        auth = ""
        if self.username:
            auth = f"{self.username}:{self.password or ''}@"
        return f"{self.type}://{auth}{self.host}:{self.port}"


class ProxySettings(SQLModel):
    enabled: bool = False
    proxies: list[ProxyConfig] = []
    strategy: Literal["round-robin", "concurrent", "random"] = "round-robin"
    max_concurrent_proxies: int = 3


class ConcurrencySettings(SQLModel):
    enabled: bool = False
    max_concurrent: int = Field(default=3, ge=1)
    delay_between_requests: int = Field(default=2000, ge=0)  # ms
    # 仅作参考，失败的条目不会被自动重新排队
    retry_attempts: int = 2


class AntiDetectionSettings(SQLModel):
    enabled: bool = True
    use_headless_browser: bool = False
    random_user_agent: bool = True
    random_delay: bool = True
    min_delay: int = 1000  # ms
    max_delay: int = 3000  # ms


class AnalysisConfig(SQLModel):
    ai_model: str = Field(default_factory=lambda: settings.AI_MODEL_ID)
    api_url: str = Field(default_factory=lambda: settings.AI_BASE_URL)
    api_key: str = Field(default_factory=lambda: settings.AI_API_KEY or "")
    prompt_template: str = DEFAULT_CLASSIFY_PROMPT
    company_name_prompt: str = DEFAULT_COMPANY_PROMPT
    email_crawl_prompt: str = DEFAULT_EMAIL_PROMPT
    auto_extract_info: bool = True
    proxy_settings: ProxySettings = Field(default_factory=ProxySettings)
    concurrency_settings: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    anti_detection_settings: AntiDetectionSettings = Field(
        default_factory=AntiDetectionSettings
    )

    @property
    def concurrency(self) -> int:
        if not self.concurrency_settings.enabled:
            return 1
        return max(1, self.concurrency_settings.max_concurrent)

    @property
    def delay_seconds(self) -> float:
        return self.concurrency_settings.delay_between_requests / 1000

    def public(self) -> dict:
        """Config dump without the API key, for logs and the failed journal."""
        return self.model_dump(
            exclude={"api_key", "prompt_template", "company_name_prompt", "email_crawl_prompt"}
        )
