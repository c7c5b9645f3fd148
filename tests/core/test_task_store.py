"""SqliteTaskStore 测试"""

from datetime import UTC, datetime, timedelta

import pytest
from taskrelay.core.models import (
    DeliveryAction,
    SourceType,
    Task,
    TaskFilter,
    TaskStatus,
    TaskType,
    WorkItem,
)
from taskrelay.core.store.task_store import to_db_time

BASE = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _make_task(task_id: str, minutes: int = 0, **overrides) -> Task:
    created = BASE + timedelta(minutes=minutes)
    data = {
        "task_id": task_id,
        "type": TaskType.IMMEDIATE,
        "source_type": SourceType.MANUAL,
        "title": f"title {task_id}",
        "session_id": f"session-{task_id}",
        "created_at": created,
        "updated_at": created,
    }
    data.update(overrides)
    return Task(**data)


async def _insert(store_group, *tasks: Task) -> None:
    for task in tasks:
        await store_group.task_store.create_task(task)
    await store_group.conn.commit()


class TestCreateAndGet:
    async def test_round_trip_keeps_nested_lists(self, store_group):
        task = _make_task(
            "task-a",
            work=[WorkItem(description="collect metrics")],
            delivery=[DeliveryAction(channel="chat", recipient="ops", content="hi")],
            scheduled_for=BASE + timedelta(hours=1),
        )
        await _insert(store_group, task)

        loaded = await store_group.task_store.get_task("task-a")
        assert loaded is not None
        assert loaded.work[0].description == "collect metrics"
        assert loaded.delivery[0].recipient == "ops"
        assert loaded.delivery[0].content == "hi"
        assert loaded.scheduled_for == BASE + timedelta(hours=1)
        assert loaded.created_at == BASE

    async def test_missing_task(self, store_group):
        assert await store_group.task_store.get_task("task-missing") is None


class TestListTasks:
    async def test_newest_first_excluding_deleted(self, store_group):
        await _insert(
            store_group,
            _make_task("task-a", 0),
            _make_task("task-b", 1),
            _make_task("task-c", 2, status=TaskStatus.DELETED),
        )
        tasks = await store_group.task_store.list_tasks()
        assert [t.task_id for t in tasks] == ["task-b", "task-a"]

        with_deleted = await store_group.task_store.list_tasks(TaskFilter(include_deleted=True))
        assert [t.task_id for t in with_deleted] == ["task-c", "task-b", "task-a"]

    async def test_filters(self, store_group):
        await _insert(
            store_group,
            _make_task("task-a", 0, status=TaskStatus.COMPLETED),
            _make_task("task-b", 1, status=TaskStatus.NEEDS_REVIEW),
            _make_task("task-c", 2, recurrence_id="evt-1", type=TaskType.SCHEDULED),
        )
        store = store_group.task_store

        by_status = await store.list_tasks(
            TaskFilter(status=[TaskStatus.COMPLETED, TaskStatus.NEEDS_REVIEW])
        )
        assert {t.task_id for t in by_status} == {"task-a", "task-b"}

        by_recurrence = await store.list_tasks(TaskFilter(recurrence_id="evt-1"))
        assert [t.task_id for t in by_recurrence] == ["task-c"]

        by_type = await store.list_tasks(TaskFilter(type=TaskType.SCHEDULED))
        assert [t.task_id for t in by_type] == ["task-c"]

    async def test_limit_and_offset(self, store_group):
        await _insert(store_group, *[_make_task(f"task-{i}", i) for i in range(5)])
        page = await store_group.task_store.list_tasks(TaskFilter(limit=2, offset=1))
        assert [t.task_id for t in page] == ["task-3", "task-2"]

        tail = await store_group.task_store.list_tasks(TaskFilter(offset=3))
        assert [t.task_id for t in tail] == ["task-1", "task-0"]


class TestUpdates:
    async def test_status_update_with_expected_status(self, store_group):
        await _insert(store_group, _make_task("task-a"))
        store = store_group.task_store
        ts = to_db_time(BASE + timedelta(minutes=5))

        missed = await store.update_task_status(
            "task-a", "completed", ts, "evt-1", expected_status="running"
        )
        assert missed == 0

        hit = await store.update_task_status(
            "task-a", "running", ts, "evt-1", expected_status="pending"
        )
        await store_group.conn.commit()
        assert hit == 1
        loaded = await store.get_task("task-a")
        assert loaded.status == TaskStatus.RUNNING
        assert loaded.pointers.latest_event_id == "evt-1"

    async def test_field_whitelist(self, store_group):
        await _insert(store_group, _make_task("task-a"))
        with pytest.raises(ValueError):
            await store_group.task_store.update_task_fields(
                "task-a", {"session_id": "session-x"}, to_db_time(BASE), "evt-1"
            )

    async def test_field_update(self, store_group):
        await _insert(store_group, _make_task("task-a"))
        await store_group.task_store.update_task_fields(
            "task-a",
            {"title": "renamed", "delivery": [DeliveryAction(channel="mail")]},
            to_db_time(BASE),
            "evt-2",
        )
        await store_group.conn.commit()
        loaded = await store_group.task_store.get_task("task-a")
        assert loaded.title == "renamed"
        assert [a.channel for a in loaded.delivery] == ["mail"]


class TestRecurrenceQueries:
    async def test_session_comes_from_first_occurrence(self, store_group):
        await _insert(
            store_group,
            _make_task("task-b", 5, recurrence_id="evt-1", occurrence_date="k2"),
            _make_task("task-a", 0, recurrence_id="evt-1", occurrence_date="k1"),
        )
        session = await store_group.task_store.find_session_for_recurrence("evt-1")
        assert session == "session-task-a"
        assert await store_group.task_store.find_session_for_recurrence("evt-x") is None

    async def test_find_by_occurrence(self, store_group):
        await _insert(store_group, _make_task("task-a", recurrence_id="evt-1", occurrence_date="k1"))
        found = await store_group.task_store.find_by_occurrence("evt-1", "k1")
        assert found is not None and found.task_id == "task-a"
        assert await store_group.task_store.find_by_occurrence("evt-1", "k2") is None

    async def test_list_due_tasks(self, store_group):
        await _insert(
            store_group,
            _make_task("task-due", type=TaskType.SCHEDULED, scheduled_for=BASE),
            _make_task(
                "task-later", 1, type=TaskType.SCHEDULED, scheduled_for=BASE + timedelta(hours=2)
            ),
            _make_task(
                "task-done",
                2,
                type=TaskType.SCHEDULED,
                scheduled_for=BASE,
                status=TaskStatus.COMPLETED,
            ),
            _make_task("task-now", 3),
        )
        due = await store_group.task_store.list_due_tasks(BASE + timedelta(minutes=1))
        assert [t.task_id for t in due] == ["task-due", "task-now"]
