"""taskrelay Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    ATTENTION_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ActorType,
    CreatedBy,
    DeliveryStatus,
    EventType,
    SourceType,
    TaskStatus,
    TaskType,
    WorkItemStatus,
    validate_transition,
)
from .event import Event, EventCausality
from .log import LogEntry, LogEntryKind
from .notification import (
    Notification,
    NotificationImportance,
    NotificationKind,
    NotificationStatus,
    StatusEvent,
)
from .payloads import (
    DeliverablePayload,
    DeliveryResultPayload,
    ModelCallCompletedPayload,
    ModelCallFailedPayload,
    ModelCallStartedPayload,
    StateTransitionPayload,
    TaskCreatedPayload,
    TaskDeletedPayload,
    TaskUpdatedPayload,
)
from .task import (
    CreateTaskInput,
    DeliveryAction,
    Task,
    TaskFilter,
    TaskPointers,
    TaskUpdate,
    WorkItem,
)
from .trigger import FiredTrigger, TriggerEvent, occurrence_key_for

__all__ = [
    # 枚举
    "TaskStatus",
    "TaskType",
    "SourceType",
    "CreatedBy",
    "WorkItemStatus",
    "DeliveryStatus",
    "EventType",
    "ActorType",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "ATTENTION_STATES",
    "validate_transition",
    # Task
    "Task",
    "TaskPointers",
    "WorkItem",
    "DeliveryAction",
    "CreateTaskInput",
    "TaskFilter",
    "TaskUpdate",
    # Event
    "Event",
    "EventCausality",
    # Trigger
    "TriggerEvent",
    "FiredTrigger",
    "occurrence_key_for",
    # Log
    "LogEntry",
    "LogEntryKind",
    # Notification
    "StatusEvent",
    "Notification",
    "NotificationKind",
    "NotificationImportance",
    "NotificationStatus",
    # Payloads
    "TaskCreatedPayload",
    "TaskUpdatedPayload",
    "StateTransitionPayload",
    "ModelCallStartedPayload",
    "ModelCallCompletedPayload",
    "ModelCallFailedPayload",
    "DeliverablePayload",
    "DeliveryResultPayload",
    "TaskDeletedPayload",
]
