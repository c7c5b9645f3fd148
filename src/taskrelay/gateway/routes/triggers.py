"""触发源与调度器路由

POST /api/triggers            向进程内触发源写入事件（webhook 式接入）
GET  /api/triggers            列出触发源中的事件
GET  /api/scheduler/status    调度器状态
POST /api/scheduler/poll      立即执行一轮轮询
"""

from fastapi import APIRouter, Depends
from taskrelay.core.models import TriggerEvent

from ..deps import get_scheduler, get_trigger_source
from ..services.scheduler import InMemoryTriggerSource, TriggerScheduler

router = APIRouter()


@router.post("/api/triggers", status_code=201)
async def add_trigger(
    body: TriggerEvent,
    source: InMemoryTriggerSource = Depends(get_trigger_source),
):
    source.add(body)
    return {
        "uid": body.uid,
        "occurrence_key": body.occurrence_key,
        "recurring": body.is_recurring,
    }


@router.get("/api/triggers")
async def list_triggers(source: InMemoryTriggerSource = Depends(get_trigger_source)):
    return {"triggers": [e.model_dump(mode="json") for e in source.list_events()]}


@router.get("/api/scheduler/status")
async def scheduler_status(scheduler: TriggerScheduler = Depends(get_scheduler)):
    return await scheduler.get_status()


@router.post("/api/scheduler/poll")
async def force_poll(scheduler: TriggerScheduler = Depends(get_scheduler)):
    fired = await scheduler.poll()
    return {"fired": fired}
