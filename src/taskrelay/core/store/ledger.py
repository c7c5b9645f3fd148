"""触发台账 -- 记录已触发的外部事件，跨进程重启保证每个发生只触发一次

键为 (event_uid, occurrence_key)。try_mark_fired 是原子的 check-then-insert，
返回前已提交，调用方必须在创建任务之前调用它。
"""

from datetime import datetime

import aiosqlite

from ..models.trigger import FiredTrigger
from .task_store import to_db_time

_COLUMNS = "event_uid, occurrence_key, title, scheduled_start, fired_at, task_id"


class SqliteTriggerLedger:
    """TriggerLedger 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def try_mark_fired(self, record: FiredTrigger) -> bool:
        """写入台账；已存在时返回 False 且不做任何修改"""
        cursor = await self._conn.execute(
            f"INSERT OR IGNORE INTO fired_triggers ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (
                record.event_uid,
                record.occurrence_key,
                record.title,
                to_db_time(record.scheduled_start),
                to_db_time(record.fired_at),
                record.task_id,
            ),
        )
        inserted = cursor.rowcount == 1
        await self._conn.commit()
        return inserted

    async def is_fired(self, event_uid: str, occurrence_key: str) -> bool:
        cursor = await self._conn.execute(
            "SELECT 1 FROM fired_triggers WHERE event_uid = ? AND occurrence_key = ?",
            (event_uid, occurrence_key),
        )
        return await cursor.fetchone() is not None

    async def attach_task(self, event_uid: str, occurrence_key: str, task_id: str) -> None:
        """记录台账行对应的任务"""
        await self._conn.execute(
            """
            UPDATE fired_triggers SET task_id = ?
            WHERE event_uid = ? AND occurrence_key = ?
            """,
            (task_id, event_uid, occurrence_key),
        )
        await self._conn.commit()

    async def recent(self, limit: int = 10) -> list[FiredTrigger]:
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM fired_triggers ORDER BY fired_at DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            FiredTrigger(
                event_uid=row[0],
                occurrence_key=row[1],
                title=row[2],
                scheduled_start=datetime.fromisoformat(row[3]),
                fired_at=datetime.fromisoformat(row[4]),
                task_id=row[5],
            )
            for row in rows
        ]

    async def count(self) -> int:
        cursor = await self._conn.execute("SELECT COUNT(*) FROM fired_triggers")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def prune_fired_before(self, cutoff: datetime) -> int:
        """删除 fired_at 早于 cutoff 的台账行，返回删除条数"""
        cursor = await self._conn.execute(
            "DELETE FROM fired_triggers WHERE fired_at < ?",
            (to_db_time(cutoff),),
        )
        await self._conn.commit()
        return cursor.rowcount


class InMemoryTriggerLedger:
    """内存实现，供测试和单进程临时场景使用"""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], FiredTrigger] = {}

    async def try_mark_fired(self, record: FiredTrigger) -> bool:
        key = (record.event_uid, record.occurrence_key)
        if key in self._records:
            return False
        self._records[key] = record.model_copy()
        return True

    async def is_fired(self, event_uid: str, occurrence_key: str) -> bool:
        return (event_uid, occurrence_key) in self._records

    async def attach_task(self, event_uid: str, occurrence_key: str, task_id: str) -> None:
        record = self._records.get((event_uid, occurrence_key))
        if record is not None:
            record.task_id = task_id

    async def recent(self, limit: int = 10) -> list[FiredTrigger]:
        records = sorted(self._records.values(), key=lambda r: r.fired_at, reverse=True)
        return records[:limit]

    async def count(self) -> int:
        return len(self._records)

    async def prune_fired_before(self, cutoff: datetime) -> int:
        stale = [key for key, r in self._records.items() if r.fired_at < cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)
