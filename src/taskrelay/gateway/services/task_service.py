"""TaskService -- 任务生命周期业务逻辑

所有对任务的写操作都在这里完成：
1. 每次变更写入一条事件，与 tasks 行更新在同一事务内提交
2. 同一任务的写入由 task 级锁串行化，task_seq 冲突时重试
3. 可选 conversation_id 作为写操作的副作用建立任务-会话关联
4. 每次状态流转向 StatusHub 推送 {task_id, status, timestamp}
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import aiosqlite
import structlog
from taskrelay.core.exceptions import (
    InvalidTransitionError,
    TaskImmutableError,
    TaskNotFoundError,
    TaskStatusConflictError,
)
from taskrelay.core.models import (
    ATTENTION_STATES,
    TERMINAL_STATES,
    ActorType,
    CreateTaskInput,
    DeliveryAction,
    Event,
    EventCausality,
    EventType,
    LogEntry,
    LogEntryKind,
    StateTransitionPayload,
    StatusEvent,
    Task,
    TaskCreatedPayload,
    TaskDeletedPayload,
    TaskFilter,
    TaskStatus,
    TaskUpdate,
    TaskUpdatedPayload,
    WorkItem,
    validate_transition,
)
from taskrelay.core.store import StoreGroup
from taskrelay.core.store.transaction import (
    append_event_and_update_task,
    append_event_only,
    create_task_with_initial_events,
)
from ulid import ULID

from .status_hub import StatusHub

log = structlog.get_logger()


def new_task_id() -> str:
    return f"task-{ULID()}"


def new_session_id() -> str:
    return f"session-{ULID()}"


class TaskService:
    """任务业务服务"""

    _task_locks: dict[str, asyncio.Lock] = {}
    _task_locks_guard = asyncio.Lock()
    # recurrence_id -> (lock, 持有或等待者数)
    _recurrence_locks: dict[str, tuple[asyncio.Lock, int]] = {}
    _max_task_seq_retries = 3

    def __init__(self, store_group: StoreGroup, hub: StatusHub | None = None) -> None:
        self._stores = store_group
        self._hub = hub

    # ------------------------------------------------------------------
    # 创建
    # ------------------------------------------------------------------

    async def create_task(
        self,
        data: CreateTaskInput,
        conversation_id: str | None = None,
        actor: ActorType = ActorType.USER,
        idempotency_key: str | None = None,
    ) -> Task:
        """创建任务

        recurrence_id 已有任务时沿用分组内最早任务的 session_id，
        保证同一递归分组共享同一会话。
        """
        if idempotency_key:
            existing_id = await self._stores.event_store.check_idempotency_key(idempotency_key)
            if existing_id:
                return await self.require_task(existing_id)

        if not data.recurrence_id:
            return await self._insert_task(data, None, conversation_id, actor, idempotency_key)

        # 会话查询与插入之间不能有同一递归分组的其他创建插入进来
        lock = await self._get_recurrence_lock(data.recurrence_id)
        try:
            async with lock:
                session_id = await self._stores.task_store.find_session_for_recurrence(
                    data.recurrence_id
                )
                return await self._insert_task(
                    data, session_id, conversation_id, actor, idempotency_key
                )
        finally:
            await self._release_recurrence_lock(data.recurrence_id)

    async def _insert_task(
        self,
        data: CreateTaskInput,
        session_id: str | None,
        conversation_id: str | None,
        actor: ActorType,
        idempotency_key: str | None,
    ) -> Task:
        now = datetime.now(UTC)
        task_id = new_task_id()
        task = Task(
            task_id=task_id,
            type=data.type,
            source_type=data.source_type,
            source_ref=data.source_ref,
            title=data.title,
            instructions=data.instructions,
            status=TaskStatus.PENDING,
            session_id=session_id or new_session_id(),
            recurrence_id=data.recurrence_id,
            occurrence_date=data.occurrence_date,
            scheduled_for=data.scheduled_for,
            created_at=now,
            updated_at=now,
            created_by=data.created_by,
            work=data.work,
            delivery=data.delivery,
        )
        event = Event(
            event_id=str(ULID()),
            task_id=task_id,
            task_seq=1,
            ts=now,
            type=EventType.TASK_CREATED,
            actor=actor,
            payload=TaskCreatedPayload(
                title=task.title,
                type=task.type.value,
                source_type=task.source_type.value,
                source_ref=task.source_ref,
                session_id=task.session_id,
                recurrence_id=task.recurrence_id,
                occurrence_date=task.occurrence_date,
                created_by=task.created_by.value,
                work_count=len(task.work),
                delivery_channels=[a.channel for a in task.delivery],
                conversation_id=conversation_id,
            ).model_dump(mode="json"),
            trace_id=f"trace-{task_id}",
            causality=EventCausality(idempotency_key=idempotency_key),
        )

        try:
            await create_task_with_initial_events(
                self._stores.conn,
                self._stores.task_store,
                self._stores.event_store,
                task,
                [event],
                link_store=self._stores.link_store,
                conversation_id=conversation_id,
            )
        except aiosqlite.IntegrityError as e:
            existing = await self._resolve_create_conflict(e, data, idempotency_key)
            if existing is not None:
                return existing
            raise

        log.info(
            "task_created",
            task_id=task_id,
            type=task.type.value,
            source_type=task.source_type.value,
            recurrence_id=task.recurrence_id,
            session_id=task.session_id,
        )
        if self._hub:
            await self._hub.broadcast(task_id, event)
        await self._publish_status(task_id, TaskStatus.PENDING, now)
        return await self.require_task(task_id)

    async def resolve_occurrence(
        self,
        data: CreateTaskInput,
        actor: ActorType = ActorType.SCHEDULER,
        idempotency_key: str | None = None,
    ) -> tuple[Task, bool]:
        """返回 (recurrence_id, occurrence_date) 已有的任务，否则创建

        Returns:
            (task, created) -- created=False 表示已存在
        """
        if data.recurrence_id and data.occurrence_date:
            existing = await self._stores.task_store.find_by_occurrence(
                data.recurrence_id, data.occurrence_date
            )
            if existing is not None:
                return existing, False
        if idempotency_key:
            existing_id = await self._stores.event_store.check_idempotency_key(idempotency_key)
            if existing_id:
                return await self.require_task(existing_id), False
        task = await self.create_task(data, actor=actor, idempotency_key=idempotency_key)
        return task, True

    # ------------------------------------------------------------------
    # 查询（只读，从不建立关联）
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task | None:
        """查询任务详情（包括已软删除的任务）"""
        return await self._stores.task_store.get_task(task_id)

    async def require_task(self, task_id: str) -> Task:
        task = await self._stores.task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """查询任务列表；默认排除软删除任务"""
        return await self._stores.task_store.list_tasks(task_filter)

    async def get_events(self, task_id: str, after_event_id: str | None = None) -> list[Event]:
        return await self._stores.event_store.get_events_for_task(task_id, after_event_id)

    async def get_conversations_for_task(self, task_id: str) -> list[str]:
        await self.require_task(task_id)
        return await self._stores.link_store.get_conversations_for_task(task_id)

    async def get_tasks_for_conversation(
        self,
        conversation_id: str,
        include_deleted: bool = False,
    ) -> list[Task]:
        task_ids = await self._stores.link_store.get_task_ids_for_conversation(conversation_id)
        tasks = []
        for task_id in task_ids:
            task = await self._stores.task_store.get_task(task_id)
            if task is None:
                continue
            if task.status == TaskStatus.DELETED and not include_deleted:
                continue
            tasks.append(task)
        return tasks

    async def get_execution_log(
        self,
        task_id: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LogEntry]:
        await self.require_task(task_id)
        return await self._stores.log_store.list_for_task(task_id, limit, offset)

    # ------------------------------------------------------------------
    # 显式 API 写操作
    # ------------------------------------------------------------------

    async def update_task(
        self,
        task_id: str,
        update: TaskUpdate,
        conversation_id: str | None = None,
        actor: ActorType = ActorType.USER,
    ) -> Task:
        """按白名单更新字段和/或状态

        Raises:
            TaskNotFoundError: 任务不存在
            TaskImmutableError: 任务已软删除
            InvalidTransitionError: 状态流转不合法
        """
        task = await self.require_task(task_id)
        if task.status == TaskStatus.DELETED:
            raise TaskImmutableError(task_id)

        new_status = update.status if update.status not in (None, task.status) else None
        if new_status is not None and not validate_transition(task.status, new_status):
            raise InvalidTransitionError(task_id, task.status.value, new_status.value)

        fields = update.changed_fields()
        if fields or new_status is None:
            await self._write_task_updated(task_id, fields, actor, conversation_id)
            # 关联已建立，状态流转不再重复关联
            conversation_id = None

        if new_status is not None:
            extra: dict[str, Any] = {}
            if new_status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                extra["completed_at"] = datetime.now(UTC)
            await self._write_state_transition(
                task_id,
                task.status,
                new_status,
                reason="manual update",
                actor=actor,
                extra_fields=extra,
                conversation_id=conversation_id,
            )

        return await self.require_task(task_id)

    async def complete_task(
        self,
        task_id: str,
        conversation_id: str | None = None,
        actor: ActorType = ActorType.USER,
    ) -> Task:
        """终态流转到 completed（包括 needs_review 的人工放行）"""
        task = await self.require_task(task_id)
        if task.status == TaskStatus.DELETED:
            raise TaskImmutableError(task_id)
        if not validate_transition(task.status, TaskStatus.COMPLETED):
            raise InvalidTransitionError(task_id, task.status.value, TaskStatus.COMPLETED.value)

        await self._write_state_transition(
            task_id,
            task.status,
            TaskStatus.COMPLETED,
            reason="completed via api",
            actor=actor,
            extra_fields={"completed_at": datetime.now(UTC)},
            conversation_id=conversation_id,
        )
        return await self.require_task(task_id)

    async def delete_task(
        self,
        task_id: str,
        conversation_id: str | None = None,
        actor: ActorType = ActorType.USER,
    ) -> Task:
        """软删除：status=deleted + deleted_at，事件中记住删除前的状态"""
        task = await self.require_task(task_id)
        if task.status == TaskStatus.DELETED:
            raise TaskImmutableError(task_id)

        now = datetime.now(UTC)
        await self._append_event_and_update_task_with_retry(
            task_id=task_id,
            new_status=TaskStatus.DELETED.value,
            expected_status=task.status.value,
            extra_fields={"deleted_at": now},
            conversation_id=conversation_id,
            event_builder=lambda seq: self._build_event(
                task_id,
                seq,
                EventType.TASK_DELETED,
                TaskDeletedPayload(
                    previous_status=task.status,
                    conversation_id=conversation_id,
                ).model_dump(mode="json"),
                actor,
                ts=now,
            ),
        )
        log.info("task_deleted", task_id=task_id, previous_status=task.status.value)
        await self._publish_status(task_id, TaskStatus.DELETED, now)
        return await self.require_task(task_id)

    async def restore_task(self, task_id: str, actor: ActorType = ActorType.USER) -> Task:
        """重新激活已软删除的任务，恢复到删除前的状态"""
        task = await self.require_task(task_id)
        if task.status != TaskStatus.DELETED:
            raise InvalidTransitionError(task_id, task.status.value, "restore")

        deleted_event = await self._stores.event_store.get_latest_event(
            task_id, EventType.TASK_DELETED
        )
        previous = TaskStatus.PENDING
        if deleted_event is not None:
            try:
                previous = TaskStatus(deleted_event.payload.get("previous_status", "pending"))
            except ValueError:
                previous = TaskStatus.PENDING
        # 删除时正在运行的任务无法继续，按失败恢复
        if previous in (TaskStatus.RUNNING, TaskStatus.DELETED):
            previous = TaskStatus.FAILED

        now = datetime.now(UTC)
        await self._append_event_and_update_task_with_retry(
            task_id=task_id,
            new_status=previous.value,
            expected_status=TaskStatus.DELETED.value,
            extra_fields={"deleted_at": None},
            event_builder=lambda seq: self._build_event(
                task_id,
                seq,
                EventType.TASK_RESTORED,
                TaskDeletedPayload(previous_status=previous).model_dump(mode="json"),
                actor,
                ts=now,
            ),
        )
        log.info("task_restored", task_id=task_id, status=previous.value)
        await self._publish_status(task_id, previous, now)
        return await self.require_task(task_id)

    # ------------------------------------------------------------------
    # 执行器使用的写操作
    # ------------------------------------------------------------------

    async def transition(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        reason: str = "",
        extra_fields: dict[str, Any] | None = None,
        actor: ActorType = ActorType.EXECUTOR,
    ) -> Event:
        """带乐观并发检查的状态流转

        Raises:
            InvalidTransitionError: 流转不合法
            TaskStatusConflictError: 任务已不在 from_status
        """
        if not validate_transition(from_status, to_status):
            raise InvalidTransitionError(task_id, from_status.value, to_status.value)
        return await self._write_state_transition(
            task_id,
            from_status,
            to_status,
            reason=reason,
            actor=actor,
            extra_fields=extra_fields,
        )

    async def save_progress(
        self,
        task_id: str,
        work: list[WorkItem] | None = None,
        delivery: list[DeliveryAction] | None = None,
        actor: ActorType = ActorType.EXECUTOR,
    ) -> Event:
        """持久化 work[] / delivery[] 的进度"""
        fields: dict[str, Any] = {}
        if work is not None:
            fields["work"] = work
        if delivery is not None:
            fields["delivery"] = delivery
        return await self._write_task_updated(task_id, fields, actor, None)

    async def record_event(
        self,
        task_id: str,
        event_type: EventType,
        payload: dict[str, Any],
        actor: ActorType = ActorType.EXECUTOR,
    ) -> Event:
        """写入不改变任务行的事件"""
        event = await self._append_event_only_with_retry(
            task_id=task_id,
            event_builder=lambda seq: self._build_event(
                task_id, seq, event_type, payload, actor
            ),
        )
        if self._hub:
            await self._hub.broadcast(task_id, event)
        return event

    async def append_log(self, task: Task, kind: LogEntryKind, content: str) -> None:
        """追加执行日志（内部工作记录，永不投递）"""
        await self._stores.log_store.append(
            LogEntry(
                entry_id=str(ULID()),
                task_id=task.task_id,
                recurrence_id=task.recurrence_id,
                ts=datetime.now(UTC),
                kind=kind,
                content=content,
            )
        )

    async def recent_recurrence_log(
        self,
        task: Task,
        limit: int,
        kinds: list[LogEntryKind] | None = None,
    ) -> list[LogEntry]:
        if not task.recurrence_id:
            return []
        return await self._stores.log_store.recent_for_recurrence(
            task.recurrence_id,
            limit,
            exclude_task_id=task.task_id,
            kinds=kinds,
        )

    async def list_due_tasks(self, now: datetime) -> list[Task]:
        return await self._stores.task_store.list_due_tasks(now)

    # ------------------------------------------------------------------
    # 内部实现
    # ------------------------------------------------------------------

    @staticmethod
    def _build_event(
        task_id: str,
        seq: int,
        event_type: EventType,
        payload: dict[str, Any],
        actor: ActorType,
        ts: datetime | None = None,
    ) -> Event:
        return Event(
            event_id=str(ULID()),
            task_id=task_id,
            task_seq=seq,
            ts=ts or datetime.now(UTC),
            type=event_type,
            actor=actor,
            payload=payload,
            trace_id=f"trace-{task_id}",
        )

    async def _write_task_updated(
        self,
        task_id: str,
        fields: dict[str, Any],
        actor: ActorType,
        conversation_id: str | None,
    ) -> Event:
        event = await self._append_event_and_update_task_with_retry(
            task_id=task_id,
            new_status=None,
            expected_status=None,
            extra_fields=fields,
            conversation_id=conversation_id,
            event_builder=lambda seq: self._build_event(
                task_id,
                seq,
                EventType.TASK_UPDATED,
                TaskUpdatedPayload(
                    fields=sorted(fields),
                    conversation_id=conversation_id,
                ).model_dump(mode="json"),
                actor,
            ),
        )
        if self._hub:
            await self._hub.broadcast(task_id, event)
        return event

    async def _write_state_transition(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        reason: str = "",
        actor: ActorType = ActorType.SYSTEM,
        extra_fields: dict[str, Any] | None = None,
        conversation_id: str | None = None,
    ) -> Event:
        """写入 STATE_TRANSITION 事件并更新 tasks 行"""
        event = await self._append_event_and_update_task_with_retry(
            task_id=task_id,
            new_status=to_status.value,
            expected_status=from_status.value,
            extra_fields=extra_fields,
            conversation_id=conversation_id,
            event_builder=lambda seq: self._build_event(
                task_id,
                seq,
                EventType.STATE_TRANSITION,
                StateTransitionPayload(
                    from_status=from_status,
                    to_status=to_status,
                    reason=reason,
                ).model_dump(mode="json"),
                actor,
            ),
        )
        log.info(
            "task_state_transition",
            task_id=task_id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
        )
        if self._hub:
            await self._hub.broadcast(task_id, event)
        await self._publish_status(task_id, to_status, event.ts)
        return event

    async def _publish_status(self, task_id: str, status: TaskStatus, ts: datetime) -> None:
        if self._hub:
            await self._hub.publish_status(
                StatusEvent(task_id=task_id, status=status, timestamp=ts)
            )

    async def _resolve_create_conflict(
        self,
        error: aiosqlite.IntegrityError,
        data: CreateTaskInput,
        idempotency_key: str | None,
    ) -> Task | None:
        """并发创建冲突时回查已存在的任务"""
        text = str(error)
        if idempotency_key and (
            "idx_events_idempotency_key" in text or "events.idempotency_key" in text
        ):
            existing_id = await self._stores.event_store.check_idempotency_key(idempotency_key)
            if existing_id:
                return await self.get_task(existing_id)
        if data.recurrence_id and data.occurrence_date and (
            "idx_tasks_occurrence" in text or "tasks.recurrence_id" in text
        ):
            return await self._stores.task_store.find_by_occurrence(
                data.recurrence_id, data.occurrence_date
            )
        return None

    @classmethod
    async def _get_task_lock(cls, task_id: str) -> asyncio.Lock:
        """获取 task 级别锁，序列化同一任务的事件写入。"""
        async with cls._task_locks_guard:
            lock = cls._task_locks.get(task_id)
            if lock is None:
                lock = asyncio.Lock()
                cls._task_locks[task_id] = lock
            return lock

    @classmethod
    async def _cleanup_task_lock(cls, task_id: str) -> None:
        """任务终态后清理 lock，避免全局字典无限增长。"""
        async with cls._task_locks_guard:
            lock = cls._task_locks.get(task_id)
            if lock is not None and not lock.locked():
                cls._task_locks.pop(task_id, None)

    @classmethod
    async def _get_recurrence_lock(cls, recurrence_id: str) -> asyncio.Lock:
        """递归分组级别锁，序列化同一分组的会话查询与任务插入。"""
        async with cls._task_locks_guard:
            lock, users = cls._recurrence_locks.get(recurrence_id, (None, 0))
            if lock is None:
                lock = asyncio.Lock()
            cls._recurrence_locks[recurrence_id] = (lock, users + 1)
            return lock

    @classmethod
    async def _release_recurrence_lock(cls, recurrence_id: str) -> None:
        async with cls._task_locks_guard:
            lock, users = cls._recurrence_locks[recurrence_id]
            if users <= 1:
                del cls._recurrence_locks[recurrence_id]
            else:
                cls._recurrence_locks[recurrence_id] = (lock, users - 1)

    @staticmethod
    def _is_task_seq_conflict(error: Exception) -> bool:
        if not isinstance(error, aiosqlite.IntegrityError):
            return False
        text = str(error)
        return "idx_events_task_seq" in text or "events.task_id, events.task_seq" in text

    async def _append_event_only_with_retry(
        self,
        task_id: str,
        event_builder: Callable[[int], Event],
    ) -> Event:
        """写事件并在 task_seq 冲突时重试。"""
        lock = await self._get_task_lock(task_id)
        async with lock:
            for attempt in range(1, self._max_task_seq_retries + 1):
                seq = await self._stores.event_store.get_next_task_seq(task_id)
                event = event_builder(seq)
                try:
                    await append_event_only(self._stores.conn, self._stores.event_store, event)
                    return event
                except aiosqlite.IntegrityError as e:
                    if self._is_task_seq_conflict(e) and attempt < self._max_task_seq_retries:
                        log.warning("task_seq_conflict_retry", task_id=task_id, attempt=attempt)
                        continue
                    raise

        raise RuntimeError("failed to append event after retries")

    async def _append_event_and_update_task_with_retry(
        self,
        task_id: str,
        new_status: str | None,
        expected_status: str | None,
        event_builder: Callable[[int], Event],
        extra_fields: dict[str, Any] | None = None,
        conversation_id: str | None = None,
    ) -> Event:
        """写事件并更新 tasks 行，在 task_seq 冲突时重试。

        Raises:
            TaskStatusConflictError: 任务已不在 expected_status
        """
        lock = await self._get_task_lock(task_id)
        result_event: Event | None = None
        async with lock:
            for attempt in range(1, self._max_task_seq_retries + 1):
                seq = await self._stores.event_store.get_next_task_seq(task_id)
                event = event_builder(seq)
                try:
                    await append_event_and_update_task(
                        self._stores.conn,
                        self._stores.event_store,
                        self._stores.task_store,
                        event,
                        new_status=new_status,
                        expected_status=expected_status,
                        extra_fields=extra_fields,
                        link_store=self._stores.link_store,
                        conversation_id=conversation_id,
                    )
                    result_event = event
                    break
                except aiosqlite.IntegrityError as e:
                    if self._is_task_seq_conflict(e) and attempt < self._max_task_seq_retries:
                        log.warning("task_seq_conflict_retry", task_id=task_id, attempt=attempt)
                        continue
                    raise
                except TaskStatusConflictError:
                    log.info(
                        "task_state_conflict",
                        task_id=task_id,
                        expected_status=expected_status,
                    )
                    raise

        if result_event is None:
            raise RuntimeError("failed to append event after retries")
        if new_status is not None and TaskStatus(new_status) in TERMINAL_STATES | ATTENTION_STATES:
            await self._cleanup_task_lock(task_id)
        return result_event
