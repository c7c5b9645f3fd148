"""任务-会话关联存储

软多对多关联，只在写操作时创建，读操作从不创建。
不做引用完整性约束，查询时通过 JOIN tasks 过滤孤儿链接。
"""

from datetime import datetime

import aiosqlite

from .task_store import to_db_time


class SqliteTaskLinkStore:
    """TaskLinkStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def link(self, task_id: str, conversation_id: str, linked_at: datetime) -> None:
        """建立关联（幂等）；不自动提交事务"""
        await self._conn.execute(
            """
            INSERT OR IGNORE INTO task_conversations (task_id, conversation_id, linked_at)
            VALUES (?, ?, ?)
            """,
            (task_id, conversation_id, to_db_time(linked_at)),
        )

    async def get_conversations_for_task(self, task_id: str) -> list[str]:
        """任务关联的会话 ID，按关联时间倒序"""
        cursor = await self._conn.execute(
            """
            SELECT conversation_id FROM task_conversations
            WHERE task_id = ?
            ORDER BY linked_at DESC
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def get_task_ids_for_conversation(self, conversation_id: str) -> list[str]:
        """会话关联的任务 ID，按关联时间倒序，跳过已不存在的任务"""
        cursor = await self._conn.execute(
            """
            SELECT tc.task_id FROM task_conversations tc
            JOIN tasks t ON t.task_id = tc.task_id
            WHERE tc.conversation_id = ?
            ORDER BY tc.linked_at DESC
            """,
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]
