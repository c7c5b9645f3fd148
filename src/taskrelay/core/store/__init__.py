"""SQLite 持久化层

所有 Store 共享一个 aiosqlite 连接，事务边界由 transaction 模块的函数控制。
"""

from pathlib import Path

import aiosqlite

from .event_store import SqliteEventStore
from .ledger import InMemoryTriggerLedger, SqliteTriggerLedger
from .link_store import SqliteTaskLinkStore
from .log_store import SqliteExecutionLogStore
from .sqlite_init import init_db
from .task_store import SqliteTaskStore
from .transaction import (
    append_event_and_update_task,
    append_event_only,
    create_task_with_initial_events,
)


class StoreGroup:
    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.task_store = SqliteTaskStore(conn)
        self.event_store = SqliteEventStore(conn)
        self.ledger = SqliteTriggerLedger(conn)
        self.link_store = SqliteTaskLinkStore(conn)
        self.log_store = SqliteExecutionLogStore(conn)

    async def close(self) -> None:
        await self.conn.close()


async def create_store_group(db_path: str | Path) -> StoreGroup:
    """打开（必要时创建）数据库文件并完成建表"""
    db_file = Path(db_path)
    db_file.parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_file)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)
    return StoreGroup(conn)


__all__ = [
    "InMemoryTriggerLedger",
    "SqliteEventStore",
    "SqliteExecutionLogStore",
    "SqliteTaskLinkStore",
    "SqliteTaskStore",
    "SqliteTriggerLedger",
    "StoreGroup",
    "append_event_and_update_task",
    "append_event_only",
    "create_store_group",
    "create_task_with_initial_events",
    "init_db",
]
