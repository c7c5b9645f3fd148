"""Task Domain Model

tasks 表是任务的当前状态视图，每次变更同时写入一条 append-only 事件。
work[] 记录内部进度，永不对外投递；delivery[] 记录每个渠道的投递义务。
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .enums import (
    CreatedBy,
    DeliveryStatus,
    SourceType,
    TaskStatus,
    TaskType,
    WorkItemStatus,
)


class WorkItem(BaseModel):
    """内部工作项"""

    description: str = Field(description="工作描述")
    status: WorkItemStatus = Field(default=WorkItemStatus.PENDING)


class DeliveryAction(BaseModel):
    """投递动作 -- 一个渠道、一个接收方、一份内容"""

    channel: str = Field(min_length=1, description="投递渠道名")
    recipient: str | None = Field(default=None, description="接收方标识")
    content: str | None = Field(
        default=None,
        description="预置内容；设置后原样投递，不调用推理引擎",
    )
    status: DeliveryStatus = Field(default=DeliveryStatus.PENDING)

    @property
    def is_precomposed(self) -> bool:
        return self.content is not None


class TaskPointers(BaseModel):
    """Task 指针信息（内部字段，不对外暴露）"""

    latest_event_id: str | None = Field(default=None, description="最新事件 ID")


class Task(BaseModel):
    """Task 数据模型"""

    task_id: str = Field(description="唯一标识，task-<ULID>")
    type: TaskType = Field(description="scheduled / immediate")
    source_type: SourceType = Field(description="任务来源")
    source_ref: str | None = Field(default=None, description="来源内的不透明引用，如触发器 UID")
    title: str = Field(description="任务标题")
    instructions: str = Field(default="", description="自由文本意图描述")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="当前状态")
    session_id: str = Field(description="推理引擎会话连续性令牌")
    recurrence_id: str | None = Field(default=None, description="递归分组标识")
    occurrence_date: str | None = Field(default=None, description="本次发生的时间键")
    scheduled_for: datetime | None = Field(default=None, description="计划执行时间")
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deleted_at: datetime | None = None
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    created_by: CreatedBy = Field(default=CreatedBy.USER)
    work: list[WorkItem] = Field(default_factory=list)
    delivery: list[DeliveryAction] = Field(default_factory=list)
    pointers: TaskPointers = Field(default_factory=TaskPointers, description="指针信息")

    @property
    def has_precomposed_delivery(self) -> bool:
        """所有投递动作都带预置内容时为 True"""
        return bool(self.delivery) and all(a.is_precomposed for a in self.delivery)

    def actions_needing_deliverable(self) -> list[int]:
        """需要由推理引擎生成内容的待投递动作下标"""
        return [
            i
            for i, action in enumerate(self.delivery)
            if action.status == DeliveryStatus.PENDING and not action.is_precomposed
        ]

    def to_public(self) -> dict[str, Any]:
        """对外视图，剔除内部指针"""
        return self.model_dump(mode="json", exclude={"pointers"})


class CreateTaskInput(BaseModel):
    """创建任务输入"""

    type: TaskType = TaskType.IMMEDIATE
    source_type: SourceType = SourceType.MANUAL
    source_ref: str | None = None
    title: str = Field(min_length=1)
    instructions: str = ""
    recurrence_id: str | None = None
    occurrence_date: str | None = None
    scheduled_for: datetime | None = None
    created_by: CreatedBy = CreatedBy.USER
    work: list[WorkItem] = Field(default_factory=list)
    delivery: list[DeliveryAction] = Field(default_factory=list)


class TaskFilter(BaseModel):
    """任务列表筛选条件；默认排除软删除任务"""

    status: list[TaskStatus] | None = None
    type: TaskType | None = None
    source_type: SourceType | None = None
    recurrence_id: str | None = None
    include_deleted: bool = False
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class TaskUpdate(BaseModel):
    """手动更新白名单；deleted 只能通过删除操作设置"""

    title: str | None = Field(default=None, min_length=1)
    instructions: str | None = None
    scheduled_for: datetime | None = None
    source_ref: str | None = None
    work: list[WorkItem] | None = None
    delivery: list[DeliveryAction] | None = None
    status: TaskStatus | None = None

    @field_validator("status")
    @classmethod
    def _reject_deleted(cls, value: TaskStatus | None) -> TaskStatus | None:
        if value == TaskStatus.DELETED:
            raise ValueError("status 'deleted' is only settable via the delete operation")
        return value

    # 这些列不可为空；scheduled_for / source_ref 允许显式置空
    @field_validator("title", "instructions", "work", "delivery")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("field cannot be null")
        return value

    def changed_fields(self) -> dict[str, Any]:
        """显式设置的非状态字段"""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "status"
        }
