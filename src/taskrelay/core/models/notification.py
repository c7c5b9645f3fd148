"""状态广播与通知模型

StatusEvent 是每次状态流转推送给订阅者的最小契约；
Notification 是需要人工关注的事件（needs_review、输入请求、失败提醒）。
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from .enums import TaskStatus


class StatusEvent(BaseModel):
    """状态流转广播 {task_id, status, timestamp}"""

    task_id: str
    status: TaskStatus
    timestamp: datetime


class NotificationKind(StrEnum):
    NOTIFY = "notify"
    REQUEST_INPUT = "request_input"
    REVIEW = "review"


class NotificationImportance(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    DELIVERED = "delivered"
    READ = "read"
    DISMISSED = "dismissed"


class Notification(BaseModel):
    notification_id: str
    kind: NotificationKind
    task_id: str | None = None
    message: str
    importance: NotificationImportance = NotificationImportance.INFO
    options: list[str] = Field(default_factory=list, description="request_input 的可选项")
    response: str | None = None
    status: NotificationStatus = NotificationStatus.PENDING
    created_at: datetime
    read_at: datetime | None = None
    responded_at: datetime | None = None
