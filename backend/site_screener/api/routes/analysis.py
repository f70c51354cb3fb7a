from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException

from site_screener.api.deps import AnalysisServiceDep
from site_screener.models import AnalysisConfig, AnalysisStart, ExtractionStart, Message, RunProgress, RunStarted
from site_screener.pipeline.errors import ConfigError
from site_screener.services.analysis_service import RunInProgressError

router = APIRouter()


@router.post("/start", response_model=RunStarted)
async def start_analysis(
    run_in: AnalysisStart,
    background_tasks: BackgroundTasks,
    service: AnalysisServiceDep,
) -> Any:
    """
    分析选中的记录，不传 ids 时分析所有待处理记录。
    记录数超过阈值时转为后台任务执行。
    """
    config = run_in.config or AnalysisConfig()
    try:
        return await service.start_analysis(background_tasks, config, run_in.ids)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/extract", response_model=RunStarted)
async def start_extraction(
    run_in: ExtractionStart,
    background_tasks: BackgroundTasks,
    service: AnalysisServiceDep,
) -> Any:
    """
    对已判定为 Y 且尚未提取信息的记录批量提取公司信息和邮箱。
    """
    config = run_in.config or AnalysisConfig()
    try:
        return await service.start_extraction(background_tasks, config, run_in.ids)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/stop")
def stop_analysis(service: AnalysisServiceDep) -> Message:
    if not service.stop():
        return Message(message="No run in progress")
    return Message(message="Run stopped")


@router.get("/progress", response_model=RunProgress)
def read_progress(service: AnalysisServiceDep) -> Any:
    return service.progress()
