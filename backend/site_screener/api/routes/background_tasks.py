from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException

from site_screener.api.deps import SessionDep, TaskManagerDep
from site_screener.models import (
    BackgroundTaskCreate,
    BackgroundTasksPublic,
    Message,
    TaskCreated,
    TaskResultsPublic,
    TaskSnapshot,
)
from site_screener.worker_tasks.background import to_public

router = APIRouter()


@router.post("/", response_model=TaskCreated)
def create_background_task(
    task_in: BackgroundTaskCreate,
    background_tasks: BackgroundTasks,
    session: SessionDep,
    manager: TaskManagerDep,
) -> Any:
    """
    创建后台任务并立即返回任务 ID，任务在响应发出后开始执行。
    """
    try:
        task = manager.create(session, task_in.urls, task_in.config, task_in.type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    background_tasks.add_task(manager.run, str(task.id))
    return TaskCreated(task_id=str(task.id))


@router.get("/", response_model=BackgroundTasksPublic)
def read_background_tasks(session: SessionDep, manager: TaskManagerDep) -> Any:
    return manager.list_tasks(session)


@router.post("/cleanup")
def cleanup_background_tasks(session: SessionDep, manager: TaskManagerDep) -> Message:
    """
    删除所有已结束（完成或失败）的任务。
    """
    deleted = manager.cleanup(session)
    return Message(message=f"Deleted {deleted} finished tasks")


@router.get("/{task_id}", response_model=TaskSnapshot)
def read_background_task(task_id: str, session: SessionDep, manager: TaskManagerDep) -> Any:
    snapshot = manager.get_status(session, task_id)
    if not snapshot:
        raise HTTPException(status_code=404, detail="Task not found")
    return snapshot


@router.post("/{task_id}/cancel")
def cancel_background_task(task_id: str, session: SessionDep, manager: TaskManagerDep) -> Any:
    """
    请求取消任务。运行中的任务会在当前条目结束后停止。
    """
    task = manager.cancel(session, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return to_public(task)


@router.get("/{task_id}/results", response_model=TaskResultsPublic)
def read_background_task_results(
    task_id: str, session: SessionDep, manager: TaskManagerDep
) -> Any:
    results = manager.get_results(session, task_id)
    if not results:
        raise HTTPException(status_code=404, detail="Task not found")
    return results
