"""枚举定义

包含 TaskStatus 状态机、任务来源与投递状态、EventType、ActorType 枚举，
以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机

    pending -> running -> {completed | failed | needs_review}。
    paused 仅由外部命令进入；deleted 仅由软删除进入。
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"
    PAUSED = "paused"
    DELETED = "deleted"


class TaskType(StrEnum):
    """任务类型"""

    SCHEDULED = "scheduled"
    IMMEDIATE = "immediate"


class SourceType(StrEnum):
    """任务来源"""

    EXTERNAL_TRIGGER = "external_trigger"
    CONVERSATION = "conversation"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class CreatedBy(StrEnum):
    """任务创建者"""

    SCHEDULER = "scheduler"
    USER = "user"
    AGENT = "agent"


class WorkItemStatus(StrEnum):
    """内部工作项状态（永不对外投递）"""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DeliveryStatus(StrEnum):
    """单个投递动作的状态，独立于兄弟动作和任务聚合状态

    skipped 表示推理引擎显式返回了“无交付物”哨兵，未发送任何内容。
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"
    SKIPPED = "skipped"


# 合法状态流转（deleted 的进出由 delete/restore 专用操作负责）
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {
        TaskStatus.RUNNING,
        TaskStatus.PAUSED,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.NEEDS_REVIEW,
    },
    # 人工处理后才能离开 needs_review
    TaskStatus.NEEDS_REVIEW: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.PAUSED: {
        TaskStatus.PENDING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.DELETED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.DELETED,
}

# 需要人工关注的状态
ATTENTION_STATES: set[TaskStatus] = {TaskStatus.NEEDS_REVIEW}


class EventType(StrEnum):
    """事件类型"""

    TASK_CREATED = "TASK_CREATED"
    TASK_UPDATED = "TASK_UPDATED"
    STATE_TRANSITION = "STATE_TRANSITION"
    MODEL_CALL_STARTED = "MODEL_CALL_STARTED"
    MODEL_CALL_COMPLETED = "MODEL_CALL_COMPLETED"
    MODEL_CALL_FAILED = "MODEL_CALL_FAILED"
    DELIVERABLE_ACCEPTED = "DELIVERABLE_ACCEPTED"
    DELIVERABLE_REJECTED = "DELIVERABLE_REJECTED"
    DELIVERY_COMPLETED = "DELIVERY_COMPLETED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    TASK_DELETED = "TASK_DELETED"
    TASK_RESTORED = "TASK_RESTORED"


class ActorType(StrEnum):
    """操作者类型"""

    USER = "user"
    AGENT = "agent"
    SCHEDULER = "scheduler"
    EXECUTOR = "executor"
    SYSTEM = "system"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
