"""事件 + 任务行原子事务测试"""

from datetime import UTC, datetime

import aiosqlite
import pytest
from taskrelay.core.exceptions import TaskStatusConflictError
from taskrelay.core.models import (
    ActorType,
    Event,
    EventType,
    SourceType,
    Task,
    TaskStatus,
    TaskType,
)
from taskrelay.core.store.transaction import (
    append_event_and_update_task,
    append_event_only,
    create_task_with_initial_events,
)
from ulid import ULID

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _task(task_id: str = "task-a") -> Task:
    return Task(
        task_id=task_id,
        type=TaskType.IMMEDIATE,
        source_type=SourceType.MANUAL,
        title="transaction test",
        session_id="session-a",
        created_at=NOW,
        updated_at=NOW,
    )


def _event(task_id: str, seq: int, event_type: EventType, payload: dict | None = None) -> Event:
    return Event(
        event_id=str(ULID()),
        task_id=task_id,
        task_seq=seq,
        ts=NOW,
        type=event_type,
        actor=ActorType.SYSTEM,
        payload=payload or {},
        trace_id=f"trace-{task_id}",
    )


async def _create(store_group, conversation_id: str | None = None) -> Event:
    created = _event("task-a", 1, EventType.TASK_CREATED)
    await create_task_with_initial_events(
        store_group.conn,
        store_group.task_store,
        store_group.event_store,
        _task(),
        [created],
        link_store=store_group.link_store,
        conversation_id=conversation_id,
    )
    return created


class TestTransactions:
    async def test_create_sets_pointer_and_link(self, store_group):
        created = await _create(store_group, conversation_id="conv-1")

        task = await store_group.task_store.get_task("task-a")
        assert task.pointers.latest_event_id == created.event_id
        assert await store_group.link_store.get_conversations_for_task("task-a") == ["conv-1"]

    async def test_status_update_is_atomic_with_event(self, store_group):
        await _create(store_group)
        transition = _event(
            "task-a",
            2,
            EventType.STATE_TRANSITION,
            {"from_status": "pending", "to_status": "running"},
        )
        await append_event_and_update_task(
            store_group.conn,
            store_group.event_store,
            store_group.task_store,
            transition,
            new_status=TaskStatus.RUNNING.value,
            expected_status=TaskStatus.PENDING.value,
        )

        task = await store_group.task_store.get_task("task-a")
        assert task.status == TaskStatus.RUNNING
        assert task.pointers.latest_event_id == transition.event_id

    async def test_conflict_rolls_back_event(self, store_group):
        await _create(store_group)
        stale = _event("task-a", 2, EventType.STATE_TRANSITION)

        with pytest.raises(TaskStatusConflictError):
            await append_event_and_update_task(
                store_group.conn,
                store_group.event_store,
                store_group.task_store,
                stale,
                new_status=TaskStatus.COMPLETED.value,
                expected_status=TaskStatus.RUNNING.value,
                link_store=store_group.link_store,
                conversation_id="conv-9",
            )

        events = await store_group.event_store.get_events_for_task("task-a")
        assert [e.task_seq for e in events] == [1]
        assert await store_group.link_store.get_conversations_for_task("task-a") == []
        task = await store_group.task_store.get_task("task-a")
        assert task.status == TaskStatus.PENDING

    async def test_duplicate_task_seq_is_rejected(self, store_group):
        await _create(store_group)
        with pytest.raises(aiosqlite.IntegrityError):
            await append_event_only(
                store_group.conn,
                store_group.event_store,
                _event("task-a", 1, EventType.MODEL_CALL_STARTED),
            )
        assert len(await store_group.event_store.get_events_for_task("task-a")) == 1

    async def test_event_only_advances_pointer(self, store_group):
        await _create(store_group)
        extra = _event("task-a", 2, EventType.MODEL_CALL_STARTED)
        await append_event_only(store_group.conn, store_group.event_store, extra)

        task = await store_group.task_store.get_task("task-a")
        assert task.status == TaskStatus.PENDING
        assert task.pointers.latest_event_id == extra.event_id
        assert await store_group.event_store.get_next_task_seq("task-a") == 3
