"""Store Protocol 接口定义

定义 TaskStore、EventStore、TriggerLedger、TaskLinkStore、ExecutionLogStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from datetime import datetime
from typing import Any, Protocol

from ..models.enums import EventType
from ..models.event import Event
from ..models.log import LogEntry, LogEntryKind
from ..models.task import Task, TaskFilter
from ..models.trigger import FiredTrigger


class TaskStore(Protocol):
    """Task 存储接口"""

    async def create_task(self, task: Task) -> None: ...

    async def get_task(self, task_id: str) -> Task | None: ...

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]: ...

    async def update_task_status(
        self,
        task_id: str,
        status: str,
        updated_at: str,
        latest_event_id: str,
        expected_status: str | None = None,
        extra_fields: dict[str, Any] | None = None,
    ) -> int: ...

    async def update_task_fields(
        self,
        task_id: str,
        fields: dict[str, Any],
        updated_at: str,
        latest_event_id: str,
    ) -> int: ...

    async def find_session_for_recurrence(self, recurrence_id: str) -> str | None: ...

    async def find_by_occurrence(
        self,
        recurrence_id: str,
        occurrence_date: str,
    ) -> Task | None: ...

    async def list_due_tasks(self, now: datetime) -> list[Task]: ...


class EventStore(Protocol):
    """Event 存储接口

    事件表 append-only：只允许插入，不允许更新或删除。
    """

    async def append_event(self, event: Event) -> None: ...

    async def get_events_for_task(
        self,
        task_id: str,
        after_event_id: str | None = None,
    ) -> list[Event]: ...

    async def get_latest_event(self, task_id: str, event_type: EventType) -> Event | None: ...

    async def get_next_task_seq(self, task_id: str) -> int: ...

    async def check_idempotency_key(self, key: str) -> str | None: ...


class TriggerLedger(Protocol):
    """触发台账接口 -- try_mark_fired 必须是原子的 check-then-insert"""

    async def try_mark_fired(self, record: FiredTrigger) -> bool: ...

    async def is_fired(self, event_uid: str, occurrence_key: str) -> bool: ...

    async def attach_task(self, event_uid: str, occurrence_key: str, task_id: str) -> None: ...

    async def recent(self, limit: int = 10) -> list[FiredTrigger]: ...

    async def count(self) -> int: ...

    async def prune_fired_before(self, cutoff: datetime) -> int: ...


class TaskLinkStore(Protocol):
    """任务-会话关联接口"""

    async def link(self, task_id: str, conversation_id: str, linked_at: datetime) -> None: ...

    async def get_conversations_for_task(self, task_id: str) -> list[str]: ...

    async def get_task_ids_for_conversation(self, conversation_id: str) -> list[str]: ...


class ExecutionLogStore(Protocol):
    """执行日志接口"""

    async def append(self, entry: LogEntry) -> None: ...

    async def list_for_task(
        self,
        task_id: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LogEntry]: ...

    async def recent_for_recurrence(
        self,
        recurrence_id: str,
        limit: int,
        exclude_task_id: str | None = None,
        kinds: list[LogEntryKind] | None = None,
    ) -> list[LogEntry]: ...
