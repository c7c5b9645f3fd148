"""依赖注入模块 -- 通过 FastAPI Depends 注入服务实例

所有实例挂在 app.state 上，在 lifespan（或测试 fixture）中通过 attach_services 初始化。
"""

from fastapi import Request
from taskrelay.core.store import StoreGroup

from .services.notification_service import NotificationService
from .services.runner import TaskRunner
from .services.scheduler import InMemoryTriggerSource, TriggerScheduler
from .services.status_hub import StatusHub
from .services.task_service import TaskService


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_status_hub(request: Request) -> StatusHub:
    return request.app.state.status_hub


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


def get_runner(request: Request) -> TaskRunner:
    return request.app.state.runner


def get_scheduler(request: Request) -> TriggerScheduler:
    return request.app.state.scheduler


def get_trigger_source(request: Request) -> InMemoryTriggerSource:
    return request.app.state.trigger_source
