import warnings
from typing import Annotated, Any, Literal, Self

from pydantic import AnyUrl, BeforeValidator, HttpUrl, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # 使用 backend 目录上一级的 .env 文件
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Site Screener"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    SENTRY_DSN: HttpUrl | None = None

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []
    FRONTEND_HOST: str = "http://localhost:3000"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            self.FRONTEND_HOST
        ]

    # Storage
    DATA_DIR: str = "data"
    SQLALCHEMY_DATABASE_URI: str | None = None
    # auto: memory in production, JSON file everywhere else
    RECORD_STORE_BACKEND: Literal["auto", "file", "memory"] = "auto"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def use_memory_store(self) -> bool:
        if self.RECORD_STORE_BACKEND == "auto":
            return self.ENVIRONMENT == "production"
        return self.RECORD_STORE_BACKEND == "memory"

    # OpenAI compatible endpoint used when a run does not bring its own config
    AI_API_KEY: str | None = None
    AI_BASE_URL: str = "https://api.openai.com/v1"
    AI_MODEL_ID: str = "gpt-3.5-turbo"

    # Record store bounds
    MAX_RECORDS: int = 10000
    RECORD_RETENTION_DAYS: int = 7
    FAILED_JOURNAL_LIMIT: int = 1000
    CRAWLED_CONTENT_CHAR_LIMIT: int = 5000
    AI_CONTENT_CHAR_LIMIT: int = 20000

    # Background processing
    BACKGROUND_TASK_THRESHOLD: int = 50
    BACKGROUND_POLL_INTERVAL: float = 3.0
    BACKGROUND_MONITOR_MAX_SECONDS: float = 600.0
    BACKGROUND_RECENT_LIMIT: int = 20

    # Stage timeouts (seconds)
    CRAWL_TIMEOUT: float = 30.0
    ANALYZE_TIMEOUT: float = 60.0
    EXTRACT_TIMEOUT: float = 30.0
    CRAWL_MAX_PAGES: int = 4
    HEADLESS_BROWSER_ON_STARTUP: bool = False

    @model_validator(mode="after")
    def _check_bounds(self) -> Self:
        if self.MAX_RECORDS < 1:
            raise ValueError("MAX_RECORDS must be at least 1")
        if self.CRAWL_MAX_PAGES < 1:
            raise ValueError("CRAWL_MAX_PAGES must be at least 1")
        if not self.AI_API_KEY and self.ENVIRONMENT != "local":
            warnings.warn(
                "AI_API_KEY is not set, every run has to provide its own API key.",
                stacklevel=1,
            )
        return self


settings = Settings()  # type: ignore
