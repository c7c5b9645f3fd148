"""Event Payload 子类型

所有事件的结构化 payload 定义。
"""

from pydantic import BaseModel, Field

from .enums import DeliveryStatus, TaskStatus


class TaskCreatedPayload(BaseModel):
    """TASK_CREATED 事件 payload"""

    title: str
    type: str
    source_type: str
    source_ref: str | None = None
    session_id: str
    recurrence_id: str | None = None
    occurrence_date: str | None = None
    created_by: str
    work_count: int = 0
    delivery_channels: list[str] = Field(default_factory=list)
    conversation_id: str | None = None


class TaskUpdatedPayload(BaseModel):
    """TASK_UPDATED 事件 payload"""

    fields: list[str] = Field(description="被修改的字段名")
    conversation_id: str | None = None


class StateTransitionPayload(BaseModel):
    """STATE_TRANSITION 事件 payload"""

    from_status: TaskStatus
    to_status: TaskStatus
    reason: str = Field(default="")


class ModelCallStartedPayload(BaseModel):
    """MODEL_CALL_STARTED 事件 payload"""

    model_alias: str = Field(description="模型别名")
    session_id: str | None = None
    continuity: bool = False
    prior_context_entries: int = 0
    request_summary: str = Field(description="请求摘要")


class ModelCallCompletedPayload(BaseModel):
    """MODEL_CALL_COMPLETED 事件 payload"""

    model_alias: str
    model_name: str = ""
    provider: str = ""
    response_summary: str = Field(description="响应摘要（超过阈值截断）")
    duration_ms: int = Field(description="调用耗时（毫秒）")
    token_usage: dict[str, int] = Field(default_factory=dict)


class ModelCallFailedPayload(BaseModel):
    """MODEL_CALL_FAILED 事件 payload"""

    model_alias: str
    error_type: str
    error_message: str
    duration_ms: int = 0


class DeliverablePayload(BaseModel):
    """DELIVERABLE_ACCEPTED / DELIVERABLE_REJECTED 事件 payload"""

    outcome: str = Field(description="extracted / no_deliverable / rejected")
    reason: str = ""
    channels: list[str] = Field(default_factory=list)


class DeliveryResultPayload(BaseModel):
    """DELIVERY_COMPLETED / DELIVERY_FAILED 事件 payload"""

    action_index: int
    channel: str
    recipient: str | None = None
    status: DeliveryStatus
    content_length: int = 0
    error: str = ""


class TaskDeletedPayload(BaseModel):
    """TASK_DELETED / TASK_RESTORED 事件 payload"""

    previous_status: TaskStatus
    conversation_id: str | None = None
