"""持久化测试 -- 关闭连接后重新打开，数据完整"""

from taskrelay.core.models import CreateTaskInput, EventType, TaskStatus
from taskrelay.core.store import create_store_group
from taskrelay.core.store.sqlite_init import verify_wal_mode
from taskrelay.gateway.services.task_service import TaskService


async def test_wal_mode_enabled(store_group):
    assert await verify_wal_mode(store_group.conn)


async def test_task_and_events_survive_reopen(tmp_db_path):
    first = await create_store_group(str(tmp_db_path))
    service = TaskService(first)
    task = await service.create_task(CreateTaskInput(title="persisted"), conversation_id="conv-1")
    await service.complete_task(task.task_id)
    await first.close()

    second = await create_store_group(str(tmp_db_path))
    try:
        reloaded = TaskService(second)
        restored = await reloaded.require_task(task.task_id)
        assert restored.status == TaskStatus.COMPLETED
        assert restored.completed_at is not None
        events = await reloaded.get_events(task.task_id)
        assert [e.type for e in events] == [EventType.TASK_CREATED, EventType.STATE_TRANSITION]
        assert await reloaded.get_conversations_for_task(task.task_id) == ["conv-1"]
    finally:
        await second.close()
