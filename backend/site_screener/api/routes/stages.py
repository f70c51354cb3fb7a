from typing import Any

from fastapi import APIRouter, HTTPException

from site_screener.api.deps import StageClientDep
from site_screener.models import (
    AnalyzeRequest,
    AnalyzeResponse,
    CompanyInfoResponse,
    CrawlRequest,
    CrawlResponse,
    EmailsResponse,
    ExtractRequest,
)
from site_screener.pipeline.errors import ConfigError, validate_config

router = APIRouter()


def _require_ai_config(request: AnalyzeRequest | ExtractRequest) -> None:
    try:
        validate_config(request.config)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if request.crawled_content is None:
        raise HTTPException(status_code=400, detail="Missing crawled content")


@router.post("/crawl", response_model=CrawlResponse)
async def crawl_site(request: CrawlRequest, client: StageClientDep) -> Any:
    """
    抓取首页及少量相关页面，返回清洗后的内容。失败时 success 为 False。
    """
    return await client.crawl(request.url, request.config)


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_content(request: AnalyzeRequest, client: StageClientDep) -> Any:
    """
    调用 AI 判断站点是否为目标客户 (Y/N)。
    """
    _require_ai_config(request)
    return await client.analyze(request.crawled_content, request.config)


@router.post("/extract-emails", response_model=EmailsResponse)
async def extract_emails(request: ExtractRequest, client: StageClientDep) -> Any:
    _require_ai_config(request)
    return await client.extract_emails(request.crawled_content, request.config)


@router.post("/extract-company-info", response_model=CompanyInfoResponse)
async def extract_company_info(request: ExtractRequest, client: StageClientDep) -> Any:
    _require_ai_config(request)
    return await client.extract_company_info(request.crawled_content, request.config)
