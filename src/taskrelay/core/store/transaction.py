"""事件 + 任务行原子事务封装

在同一 SQLite 事务内原子提交事件和 tasks 行变更（以及可选的会话关联），
失败时整体回滚。
"""

from typing import Any

import aiosqlite

from ..exceptions import TaskStatusConflictError
from ..models.event import Event
from ..models.task import Task
from .event_store import SqliteEventStore
from .link_store import SqliteTaskLinkStore
from .task_store import SqliteTaskStore, to_db_time


async def create_task_with_initial_events(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    event_store: SqliteEventStore,
    task: Task,
    events: list[Event],
    link_store: SqliteTaskLinkStore | None = None,
    conversation_id: str | None = None,
) -> None:
    """单事务写入 task 行 + 初始事件 + 可选会话关联"""
    try:
        await task_store.create_task(task)
        for event in events:
            await event_store.append_event(event)
        if events:
            latest = events[-1]
            await task_store.update_task_fields(
                task.task_id,
                {},
                updated_at=to_db_time(latest.ts),
                latest_event_id=latest.event_id,
            )
        if link_store is not None and conversation_id:
            await link_store.link(task.task_id, conversation_id, task.created_at)
        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def append_event_and_update_task(
    conn: aiosqlite.Connection,
    event_store: SqliteEventStore,
    task_store: SqliteTaskStore,
    event: Event,
    new_status: str | None = None,
    expected_status: str | None = None,
    extra_fields: dict[str, Any] | None = None,
    link_store: SqliteTaskLinkStore | None = None,
    conversation_id: str | None = None,
) -> None:
    """在同一事务内原子提交事件写入和 tasks 行更新

    Args:
        conn: 数据库连接（需在同一连接上操作以保证事务性）
        event_store: EventStore 实例
        task_store: TaskStore 实例
        event: 要写入的事件
        new_status: 新状态；None 表示只更新字段
        expected_status: 乐观并发检查的预期当前状态
        extra_fields: 同时更新的白名单字段
        link_store: 会话关联存储
        conversation_id: 非空时作为副作用建立关联

    Raises:
        TaskStatusConflictError: 任务已不在 expected_status
    """
    try:
        await event_store.append_event(event)

        if new_status is not None:
            affected = await task_store.update_task_status(
                task_id=event.task_id,
                status=new_status,
                updated_at=to_db_time(event.ts),
                latest_event_id=event.event_id,
                expected_status=expected_status,
                extra_fields=extra_fields,
            )
        else:
            affected = await task_store.update_task_fields(
                event.task_id,
                extra_fields or {},
                updated_at=to_db_time(event.ts),
                latest_event_id=event.event_id,
            )
        if affected == 0:
            raise TaskStatusConflictError(event.task_id, expected_status or "")

        if link_store is not None and conversation_id:
            await link_store.link(event.task_id, conversation_id, event.ts)

        await conn.commit()
    except Exception:
        await conn.rollback()
        raise


async def append_event_only(
    conn: aiosqlite.Connection,
    event_store: SqliteEventStore,
    event: Event,
) -> None:
    """仅写入事件并更新 pointers（不改变 Task 状态）"""
    try:
        await event_store.append_event(event)

        await conn.execute(
            """
            UPDATE tasks
            SET updated_at = ?,
                pointers = json_set(pointers, '$.latest_event_id', ?)
            WHERE task_id = ?
            """,
            (to_db_time(event.ts), event.event_id, event.task_id),
        )

        await conn.commit()
    except Exception:
        await conn.rollback()
        raise
