import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI
from fastapi.routing import APIRoute
from sqlmodel import Session
from starlette.middleware.cors import CORSMiddleware

from site_screener.api.deps import get_task_manager, get_task_monitor
from site_screener.api.main import api_router
from site_screener.core.config import settings
from site_screener.core.db import engine, init_db
from site_screener.pipeline.browser import GlobalBrowserManager

logger = logging.getLogger(__name__)


# 自定义生成唯一ID函数
def custom_generate_unique_id(route: APIRoute) -> str:
    return f"{route.tags[0]}-{route.name}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db(engine)
    manager = get_task_manager()
    with Session(engine) as session:
        manager.recover_orphans(session)
    if settings.HEADLESS_BROWSER_ON_STARTUP:
        await GlobalBrowserManager.start()
    # 继续监控上次会话留下的后台任务
    monitor = get_task_monitor()
    await monitor.resume()
    yield
    await monitor.stop_all()
    await manager.shutdown()
    await GlobalBrowserManager.stop()


if settings.SENTRY_DSN and settings.ENVIRONMENT != "local":
    sentry_sdk.init(dsn=str(settings.SENTRY_DSN), enable_tracing=True)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    generate_unique_id_function=custom_generate_unique_id,
    lifespan=lifespan,
)

# 设置所有允许的 CORS 源
if settings.all_cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.all_cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)
