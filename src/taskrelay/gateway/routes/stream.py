"""SSE 事件流路由

GET /api/stream/tasks: 全局状态流。先推送 snapshot，随后推送 status / notification。
GET /api/stream/task/{task_id}: 单任务事件流。先推送历史事件，再推送实时事件，
    到达终态或 needs_review 时携带 final: true 并结束；支持 Last-Event-ID 断线重连。
两者都有心跳保活。
"""

import asyncio
import json

import structlog
from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse
from taskrelay.core.config import SSE_HEARTBEAT_INTERVAL
from taskrelay.core.models import (
    TERMINAL_STATES,
    Event,
    EventType,
    Notification,
    StatusEvent,
    TaskStatus,
)

from ..deps import get_notification_service, get_status_hub, get_task_service
from ..services.notification_service import NotificationService
from ..services.status_hub import StatusHub
from ..services.task_service import TaskService
from .tasks import build_snapshot

log = structlog.get_logger()

router = APIRouter()

# 单任务流在这些状态结束；needs_review 需要人工介入，不会自行继续
_STREAM_END_STATES = TERMINAL_STATES | {TaskStatus.NEEDS_REVIEW}


def _event_to_sse(event: Event, is_final: bool = False) -> dict:
    data = event.to_public()
    data["final"] = is_final
    return {
        "id": event.event_id,
        "event": event.type.value,
        "data": json.dumps(data, ensure_ascii=False),
    }


def _is_final_event(event: Event) -> bool:
    if event.type == EventType.TASK_DELETED:
        return True
    if event.type == EventType.STATE_TRANSITION and "to_status" in event.payload:
        try:
            return TaskStatus(event.payload["to_status"]) in _STREAM_END_STATES
        except ValueError:
            return False
    return False


@router.get("/api/stream/tasks")
async def stream_status(
    request: Request,
    service: TaskService = Depends(get_task_service),
    notifications: NotificationService = Depends(get_notification_service),
    hub: StatusHub = Depends(get_status_hub),
):
    """全局状态流"""
    # 先订阅再取快照，快照之后的变化不会丢失
    queue = await hub.subscribe()
    snapshot = await build_snapshot(service, notifications)

    async def event_generator():
        try:
            yield {"event": "snapshot", "data": json.dumps(snapshot, ensure_ascii=False)}
            while True:
                # 被丢弃的订阅者不再收到推送；结束流让客户端重连并重新取快照
                if queue.empty() and not hub.is_subscribed(queue):
                    log.info("status_stream_closed", reason="subscriber_dropped")
                    return
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_INTERVAL)
                except TimeoutError:
                    yield {"comment": "heartbeat"}
                    continue
                if isinstance(item, StatusEvent):
                    yield {"event": "status", "data": item.model_dump_json()}
                elif isinstance(item, Notification):
                    yield {"event": "notification", "data": item.model_dump_json()}
        finally:
            await hub.unsubscribe(queue)

    return EventSourceResponse(event_generator())


@router.get("/api/stream/task/{task_id}")
async def stream_task_events(
    task_id: str,
    request: Request,
    service: TaskService = Depends(get_task_service),
    hub: StatusHub = Depends(get_status_hub),
):
    """单任务事件流"""
    await service.require_task(task_id)
    last_event_id = request.headers.get("last-event-id")

    async def event_generator():
        queue = await hub.subscribe(task_id)
        try:
            events = await service.get_events(task_id, after_event_id=last_event_id)
            current = await service.require_task(task_id)
            sent: set[str] = set()
            for event in events:
                sent.add(event.event_id)
                yield _event_to_sse(event, is_final=_is_final_event(event))

            # 已在结束状态：历史推送完即关闭
            if current.status in _STREAM_END_STATES:
                return

            while True:
                if queue.empty() and not hub.is_subscribed(queue, task_id):
                    log.info("task_stream_closed", task_id=task_id, reason="subscriber_dropped")
                    return
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_INTERVAL)
                except TimeoutError:
                    yield {"comment": "heartbeat"}
                    continue
                if event.event_id in sent:
                    continue
                is_final = _is_final_event(event)
                yield _event_to_sse(event, is_final=is_final)
                if is_final:
                    return
        finally:
            await hub.unsubscribe(queue, task_id)

    return EventSourceResponse(event_generator())
