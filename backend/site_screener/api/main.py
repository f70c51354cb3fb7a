from fastapi import APIRouter

from site_screener.api.routes import analysis, analysis_data, background_tasks, failed_data, stages

api_router = APIRouter()
api_router.include_router(analysis_data.router, prefix="/analysis-data", tags=["analysis-data"])
api_router.include_router(failed_data.router, prefix="/failed-data", tags=["failed-data"])
api_router.include_router(stages.router, tags=["stages"])
api_router.include_router(analysis.router, prefix="/analysis", tags=["analysis"])
api_router.include_router(
    background_tasks.router, prefix="/background-tasks", tags=["background-tasks"]
)
