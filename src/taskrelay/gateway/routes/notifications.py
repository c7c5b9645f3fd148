"""通知路由

GET  /api/notifications                      待处理通知（include_all=true 返回全部）
POST /api/notifications/request-input        创建输入请求
POST /api/notifications/{id}/respond         回复输入请求
POST /api/notifications/{id}/read            标记已读
POST /api/notifications/{id}/dismiss         忽略
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..deps import get_notification_service
from ..services.notification_service import NotificationService

router = APIRouter()


class RequestInputBody(BaseModel):
    question: str = Field(min_length=1)
    options: list[str] = Field(default_factory=list)
    task_id: str | None = None


class RespondBody(BaseModel):
    response: str


@router.get("/api/notifications")
async def list_notifications(
    include_all: bool = Query(default=False),
    service: NotificationService = Depends(get_notification_service),
):
    items = service.get_all() if include_all else service.get_pending()
    return {"notifications": [n.model_dump(mode="json") for n in items]}


@router.post("/api/notifications/request-input", status_code=201)
async def request_input(
    body: RequestInputBody,
    service: NotificationService = Depends(get_notification_service),
):
    item = await service.request_input(body.question, body.options, task_id=body.task_id)
    return item.model_dump(mode="json")


@router.post("/api/notifications/{notification_id}/respond")
async def respond(
    notification_id: str,
    body: RespondBody,
    service: NotificationService = Depends(get_notification_service),
):
    item = await service.respond(notification_id, body.response)
    return item.model_dump(mode="json")


@router.post("/api/notifications/{notification_id}/read")
async def mark_read(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    item = await service.mark_read(notification_id)
    return item.model_dump(mode="json")


@router.post("/api/notifications/{notification_id}/dismiss")
async def dismiss(
    notification_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    item = await service.dismiss(notification_id)
    return item.model_dump(mode="json")
