"""TaskService 生命周期测试"""

import asyncio

import pytest
import pytest_asyncio
from taskrelay.core.exceptions import (
    InvalidTransitionError,
    TaskImmutableError,
    TaskNotFoundError,
    TaskStatusConflictError,
)
from taskrelay.core.models import (
    CreateTaskInput,
    DeliveryAction,
    DeliveryStatus,
    EventType,
    StatusEvent,
    TaskFilter,
    TaskStatus,
    TaskUpdate,
)
from taskrelay.gateway.services.status_hub import StatusHub
from taskrelay.gateway.services.task_service import TaskService


@pytest_asyncio.fixture
async def hub() -> StatusHub:
    return StatusHub()


@pytest_asyncio.fixture
async def service(store_group, hub) -> TaskService:
    return TaskService(store_group, hub)


class TestCreate:
    async def test_create_writes_task_and_event(self, service):
        task = await service.create_task(CreateTaskInput(title="Prepare summary"))

        assert task.task_id.startswith("task-")
        assert task.session_id.startswith("session-")
        assert task.status == TaskStatus.PENDING
        events = await service.get_events(task.task_id)
        assert [e.type for e in events] == [EventType.TASK_CREATED]
        assert events[0].trace_id == f"trace-{task.task_id}"

    async def test_recurrence_shares_first_session(self, service):
        first = await service.create_task(
            CreateTaskInput(title="Standup", recurrence_id="evt-1", occurrence_date="k1")
        )
        second = await service.create_task(
            CreateTaskInput(title="Standup", recurrence_id="evt-1", occurrence_date="k2")
        )
        other = await service.create_task(CreateTaskInput(title="One-off"))

        assert second.session_id == first.session_id
        assert other.session_id != first.session_id

    async def test_concurrent_recurrence_creates_share_session(self, service):
        tasks = await asyncio.gather(
            *(
                service.create_task(
                    CreateTaskInput(title="Standup", recurrence_id="evt-9", occurrence_date=key)
                )
                for key in ("k1", "k2", "k3")
            )
        )

        assert len({t.session_id for t in tasks}) == 1
        assert "evt-9" not in TaskService._recurrence_locks

    async def test_idempotency_key_returns_existing(self, service):
        first = await service.create_task(CreateTaskInput(title="once"), idempotency_key="k-1")
        again = await service.create_task(CreateTaskInput(title="once"), idempotency_key="k-1")
        assert again.task_id == first.task_id
        assert len(await service.list_tasks()) == 1

    async def test_resolve_occurrence(self, service):
        data = CreateTaskInput(title="Review", recurrence_id="evt-1", occurrence_date="k1")
        task, created = await service.resolve_occurrence(data)
        same, created_again = await service.resolve_occurrence(data)

        assert created and not created_again
        assert same.task_id == task.task_id

    async def test_create_publishes_status(self, service, hub):
        queue = await hub.subscribe()
        task = await service.create_task(CreateTaskInput(title="observe"))
        status = queue.get_nowait()
        assert isinstance(status, StatusEvent)
        assert status.task_id == task.task_id
        assert status.status == TaskStatus.PENDING


class TestConversationLinks:
    async def test_links_created_only_by_writes(self, service):
        task = await service.create_task(CreateTaskInput(title="linked"), conversation_id="conv-1")
        await service.update_task(task.task_id, TaskUpdate(title="renamed"), conversation_id="conv-2")

        # 读操作不建立关联
        await service.get_task(task.task_id)
        await service.get_events(task.task_id)

        assert sorted(await service.get_conversations_for_task(task.task_id)) == ["conv-1", "conv-2"]
        linked = await service.get_tasks_for_conversation("conv-1")
        assert [t.task_id for t in linked] == [task.task_id]

    async def test_deleted_tasks_hidden_from_conversation_by_default(self, service):
        task = await service.create_task(CreateTaskInput(title="gone"), conversation_id="conv-1")
        await service.delete_task(task.task_id)

        assert await service.get_tasks_for_conversation("conv-1") == []
        with_deleted = await service.get_tasks_for_conversation("conv-1", include_deleted=True)
        assert [t.task_id for t in with_deleted] == [task.task_id]

    async def test_unknown_task(self, service):
        with pytest.raises(TaskNotFoundError):
            await service.get_conversations_for_task("task-missing")


class TestUpdate:
    async def test_field_and_status_update(self, service):
        task = await service.create_task(CreateTaskInput(title="draft"))
        updated = await service.update_task(
            task.task_id,
            TaskUpdate(title="final", status=TaskStatus.PAUSED),
        )
        assert updated.title == "final"
        assert updated.status == TaskStatus.PAUSED

        events = await service.get_events(task.task_id)
        assert [e.type for e in events] == [
            EventType.TASK_CREATED,
            EventType.TASK_UPDATED,
            EventType.STATE_TRANSITION,
        ]
        assert events[1].payload["fields"] == ["title"]

    async def test_invalid_transition(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.complete_task(task.task_id)
        with pytest.raises(InvalidTransitionError):
            await service.update_task(task.task_id, TaskUpdate(status=TaskStatus.PENDING))

    async def test_complete_sets_completed_at(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        done = await service.complete_task(task.task_id)
        assert done.status == TaskStatus.COMPLETED
        assert done.completed_at is not None

    async def test_needs_review_can_be_completed(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.transition(task.task_id, TaskStatus.PENDING, TaskStatus.RUNNING)
        await service.transition(task.task_id, TaskStatus.RUNNING, TaskStatus.NEEDS_REVIEW)
        done = await service.complete_task(task.task_id)
        assert done.status == TaskStatus.COMPLETED

    async def test_needs_review_releases_task_lock(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.transition(task.task_id, TaskStatus.PENDING, TaskStatus.RUNNING)
        assert task.task_id in TaskService._task_locks

        await service.transition(task.task_id, TaskStatus.RUNNING, TaskStatus.NEEDS_REVIEW)
        assert task.task_id not in TaskService._task_locks


class TestDeleteRestore:
    async def test_soft_delete(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        deleted = await service.delete_task(task.task_id)

        assert deleted.status == TaskStatus.DELETED
        assert deleted.deleted_at is not None
        assert await service.list_tasks() == []
        listed = await service.list_tasks(TaskFilter(include_deleted=True))
        assert [t.task_id for t in listed] == [task.task_id]
        # 详情仍可查询
        assert (await service.get_task(task.task_id)) is not None

    async def test_deleted_task_is_immutable(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.delete_task(task.task_id)

        with pytest.raises(TaskImmutableError):
            await service.update_task(task.task_id, TaskUpdate(title="y"))
        with pytest.raises(TaskImmutableError):
            await service.complete_task(task.task_id)
        with pytest.raises(TaskImmutableError):
            await service.delete_task(task.task_id)

    async def test_restore_returns_previous_status(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.update_task(task.task_id, TaskUpdate(status=TaskStatus.PAUSED))
        await service.delete_task(task.task_id)

        restored = await service.restore_task(task.task_id)
        assert restored.status == TaskStatus.PAUSED
        assert restored.deleted_at is None
        events = await service.get_events(task.task_id)
        assert events[-1].type == EventType.TASK_RESTORED

    async def test_restore_interrupted_run_becomes_failed(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.transition(task.task_id, TaskStatus.PENDING, TaskStatus.RUNNING)
        await service.delete_task(task.task_id)

        restored = await service.restore_task(task.task_id)
        assert restored.status == TaskStatus.FAILED

    async def test_restore_requires_deleted(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        with pytest.raises(InvalidTransitionError):
            await service.restore_task(task.task_id)


class TestExecutorFacing:
    async def test_transition_conflict(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.transition(task.task_id, TaskStatus.PENDING, TaskStatus.RUNNING)
        with pytest.raises(TaskStatusConflictError):
            await service.transition(task.task_id, TaskStatus.PENDING, TaskStatus.RUNNING)

    async def test_transition_validates(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        with pytest.raises(InvalidTransitionError):
            await service.transition(task.task_id, TaskStatus.PENDING, TaskStatus.NEEDS_REVIEW)

    async def test_save_progress(self, service):
        task = await service.create_task(
            CreateTaskInput(title="x", delivery=[DeliveryAction(channel="chat")])
        )
        delivery = [a.model_copy() for a in task.delivery]
        delivery[0].status = DeliveryStatus.COMPLETED
        await service.save_progress(task.task_id, delivery=delivery)

        reloaded = await service.require_task(task.task_id)
        assert reloaded.delivery[0].status == DeliveryStatus.COMPLETED

    async def test_task_seq_is_monotonic(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        for _ in range(3):
            await service.record_event(task.task_id, EventType.MODEL_CALL_STARTED, {})
        events = await service.get_events(task.task_id)
        assert [e.task_seq for e in events] == [1, 2, 3, 4]

    async def test_events_after_resume_point(self, service):
        task = await service.create_task(CreateTaskInput(title="x"))
        await service.record_event(task.task_id, EventType.MODEL_CALL_STARTED, {})
        await service.record_event(task.task_id, EventType.MODEL_CALL_COMPLETED, {})
        events = await service.get_events(task.task_id)

        resumed = await service.get_events(task.task_id, after_event_id=events[0].event_id)
        assert [e.event_id for e in resumed] == [e.event_id for e in events[1:]]
        # 不认识的续传点退回完整历史
        unknown = await service.get_events(task.task_id, after_event_id="not-an-event")
        assert len(unknown) == 3
