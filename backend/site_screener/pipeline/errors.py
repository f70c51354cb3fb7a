"""
Stage error taxonomy.

Stage failures travel as ErrorDetails values inside stage responses. Only
configuration problems (ConfigError) and cooperative cancellation
(StageCancelled) are raised as exceptions.
"""
import logging

import httpx
import openai

from site_screener.models import AnalysisConfig, ErrorDetails, ErrorKind, ErrorStage

logger = logging.getLogger(__name__)

NON_RETRYABLE_KINDS = frozenset({ErrorKind.CONFIG})

STAGE_ERROR_KIND = {
    ErrorStage.CRAWLING: ErrorKind.CRAWL,
    ErrorStage.AI_ANALYSIS: ErrorKind.AI,
    ErrorStage.INFO_EXTRACTION: ErrorKind.AI,
    ErrorStage.INITIALIZATION: ErrorKind.CONFIG,
}

STATUS_MESSAGES = {
    400: "Bad request, check the model name and API URL",
    401: "Invalid API key",
    403: "Access denied",
    404: "Endpoint not found",
    429: "Rate limited, try again later",
}


class ConfigError(Exception):
    """Missing or invalid AI endpoint configuration, raised before any call is made."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_details(self) -> ErrorDetails:
        return ErrorDetails(
            type=ErrorKind.CONFIG,
            stage=ErrorStage.INITIALIZATION,
            message=self.message,
            retryable=False,
        )


class StageCancelled(Exception):
    """The coordinator was cancelled before a stage call could be made."""


class StageFailure(Exception):
    """A stage call completed but produced nothing usable, e.g. an empty AI answer."""


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def make_details(
    kind: ErrorKind,
    stage: ErrorStage,
    message: str,
    status_code: int | None = None,
    retryable: bool | None = None,
) -> ErrorDetails:
    if retryable is None:
        if status_code is not None:
            retryable = is_retryable_status(status_code)
        else:
            retryable = kind not in NON_RETRYABLE_KINDS
    return ErrorDetails(
        type=kind,
        stage=stage,
        message=message,
        status_code=status_code,
        retryable=retryable,
    )


def status_details(status_code: int, stage: ErrorStage, body: str = "") -> ErrorDetails:
    message = STATUS_MESSAGES.get(status_code) or f"HTTP {status_code}"
    if body:
        message = f"{message}: {body[:200]}"
    return make_details(STAGE_ERROR_KIND[stage], stage, message, status_code=status_code)


def classify_exception(exc: BaseException, stage: ErrorStage) -> ErrorDetails:
    """Map an exception raised by a stage call onto the error taxonomy."""
    if isinstance(exc, ConfigError):
        return exc.to_details()
    if isinstance(exc, StageFailure):
        return make_details(STAGE_ERROR_KIND[stage], stage, str(exc))
    if isinstance(exc, (TimeoutError, httpx.TimeoutException, openai.APITimeoutError)):
        return make_details(ErrorKind.TIMEOUT, stage, "Request timed out")
    if isinstance(exc, (httpx.NetworkError, openai.APIConnectionError)):
        return make_details(ErrorKind.NETWORK, stage, f"Network error: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return status_details(exc.response.status_code, stage)
    if isinstance(exc, openai.APIStatusError):
        return status_details(exc.status_code, stage)
    logger.error(f"Unexpected error during {stage.value}: {exc!r}", exc_info=exc)
    return make_details(ErrorKind.UNKNOWN, stage, str(exc) or exc.__class__.__name__)


def validate_config(config: AnalysisConfig) -> None:
    """Fail fast when the AI endpoint cannot possibly be called."""
    if not config.api_key or not config.api_key.strip():
        raise ConfigError("API key is not configured")
    if not config.api_url or not config.api_url.strip():
        raise ConfigError("API URL is not configured")
    if not config.api_url.startswith(("http://", "https://")):
        raise ConfigError(f"API URL is not an http(s) URL: {config.api_url}")
    if not config.ai_model:
        raise ConfigError("Model name is not configured")
