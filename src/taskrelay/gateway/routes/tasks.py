"""任务路由

POST   /api/tasks                          创建任务（可选 conversation_id 建立关联）
GET    /api/tasks                          任务列表（默认排除软删除）
GET    /api/tasks/snapshot                 当前全部任务状态 + 待处理通知
GET    /api/tasks/{task_id}                任务详情 + 事件
GET    /api/tasks/{task_id}/log            执行日志
PATCH  /api/tasks/{task_id}                白名单字段更新 / 状态流转
POST   /api/tasks/{task_id}/complete       完成
DELETE /api/tasks/{task_id}                软删除
POST   /api/tasks/{task_id}/restore        恢复
POST   /api/tasks/{task_id}/run            提交到执行队列
GET    /api/tasks/{task_id}/conversations  关联的会话
GET    /api/conversations/{id}/tasks       会话关联的任务
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from starlette.responses import JSONResponse
from taskrelay.core.exceptions import InvalidTransitionError
from taskrelay.core.models import (
    CreateTaskInput,
    SourceType,
    TaskFilter,
    TaskStatus,
    TaskType,
    TaskUpdate,
)

from ..deps import get_notification_service, get_runner, get_task_service
from ..services.notification_service import NotificationService
from ..services.runner import TaskRunner
from ..services.task_service import TaskService

router = APIRouter()


class CreateTaskRequest(CreateTaskInput):
    """创建任务请求体"""

    conversation_id: str | None = Field(default=None, description="建立任务-会话关联")
    idempotency_key: str | None = Field(default=None, description="幂等键，重复请求返回已有任务")


@router.post("/api/tasks", status_code=201)
async def create_task(
    body: CreateTaskRequest,
    service: TaskService = Depends(get_task_service),
    runner: TaskRunner = Depends(get_runner),
):
    data = CreateTaskInput.model_validate(
        body.model_dump(exclude={"conversation_id", "idempotency_key"})
    )
    task = await service.create_task(
        data,
        conversation_id=body.conversation_id,
        idempotency_key=body.idempotency_key,
    )
    # 立即任务直接入队；定时任务由调度器在 scheduled_for 到期后提交
    if task.status == TaskStatus.PENDING and task.type == TaskType.IMMEDIATE:
        runner.submit(task.task_id)
    return task.to_public()


@router.get("/api/tasks")
async def list_tasks(
    status: list[TaskStatus] | None = Query(default=None, description="按状态筛选，可多选"),
    type: TaskType | None = Query(default=None),
    source_type: SourceType | None = Query(default=None),
    recurrence_id: str | None = Query(default=None),
    include_deleted: bool = Query(default=False),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    service: TaskService = Depends(get_task_service),
):
    """任务列表，按 created_at 倒序"""
    tasks = await service.list_tasks(
        TaskFilter(
            status=status,
            type=type,
            source_type=source_type,
            recurrence_id=recurrence_id,
            include_deleted=include_deleted,
            limit=limit,
            offset=offset,
        )
    )
    return {"tasks": [t.to_public() for t in tasks], "count": len(tasks)}


@router.get("/api/tasks/snapshot")
async def get_snapshot(
    service: TaskService = Depends(get_task_service),
    notifications: NotificationService = Depends(get_notification_service),
):
    """拉取式快照：推送丢失时客户端以此为准"""
    return await build_snapshot(service, notifications)


async def build_snapshot(service: TaskService, notifications: NotificationService) -> dict:
    tasks = await service.list_tasks(TaskFilter())
    return {
        "generated_at": datetime.now(UTC).isoformat(),
        "tasks": [
            {
                "task_id": t.task_id,
                "title": t.title,
                "status": t.status.value,
                "updated_at": t.updated_at.isoformat(),
            }
            for t in tasks
        ],
        "notifications": [n.model_dump(mode="json") for n in notifications.get_pending()],
    }


@router.get("/api/tasks/{task_id}")
async def get_task_detail(task_id: str, service: TaskService = Depends(get_task_service)):
    """任务详情（包含已软删除任务）及其事件历史"""
    task = await service.require_task(task_id)
    events = await service.get_events(task_id)
    return {"task": task.to_public(), "events": [e.to_public() for e in events]}


@router.get("/api/tasks/{task_id}/log")
async def get_execution_log(
    task_id: str,
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    service: TaskService = Depends(get_task_service),
):
    entries = await service.get_execution_log(task_id, limit=limit, offset=offset)
    return {"task_id": task_id, "entries": [e.model_dump(mode="json") for e in entries]}


@router.patch("/api/tasks/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    conversation_id: str | None = Query(default=None),
    service: TaskService = Depends(get_task_service),
):
    task = await service.update_task(task_id, body, conversation_id=conversation_id)
    return task.to_public()


@router.post("/api/tasks/{task_id}/complete")
async def complete_task(
    task_id: str,
    conversation_id: str | None = Query(default=None),
    service: TaskService = Depends(get_task_service),
):
    task = await service.complete_task(task_id, conversation_id=conversation_id)
    return task.to_public()


@router.delete("/api/tasks/{task_id}")
async def delete_task(
    task_id: str,
    conversation_id: str | None = Query(default=None),
    service: TaskService = Depends(get_task_service),
):
    task = await service.delete_task(task_id, conversation_id=conversation_id)
    return task.to_public()


@router.post("/api/tasks/{task_id}/restore")
async def restore_task(task_id: str, service: TaskService = Depends(get_task_service)):
    task = await service.restore_task(task_id)
    return task.to_public()


@router.post("/api/tasks/{task_id}/run")
async def run_task(
    task_id: str,
    service: TaskService = Depends(get_task_service),
    runner: TaskRunner = Depends(get_runner),
):
    """把 pending 任务提交到执行队列"""
    task = await service.require_task(task_id)
    if task.status != TaskStatus.PENDING:
        raise InvalidTransitionError(task_id, task.status.value, TaskStatus.RUNNING.value)
    queued = runner.submit(task_id)
    return JSONResponse(status_code=202, content={"task_id": task_id, "queued": queued})


@router.get("/api/tasks/{task_id}/conversations")
async def get_task_conversations(task_id: str, service: TaskService = Depends(get_task_service)):
    conversation_ids = await service.get_conversations_for_task(task_id)
    return {"task_id": task_id, "conversation_ids": conversation_ids}


@router.get("/api/conversations/{conversation_id}/tasks")
async def get_conversation_tasks(
    conversation_id: str,
    include_deleted: bool = Query(default=False),
    service: TaskService = Depends(get_task_service),
):
    tasks = await service.get_tasks_for_conversation(
        conversation_id, include_deleted=include_deleted
    )
    return {"conversation_id": conversation_id, "tasks": [t.to_public() for t in tasks]}
