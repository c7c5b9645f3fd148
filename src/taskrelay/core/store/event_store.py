"""EventStore SQLite 实现

events 表只追加；同一任务内 task_seq 从 1 开始严格递增，
断线重连按 task_seq 而不是 event_id 定位续传位置。
"""

import json
from datetime import datetime

import aiosqlite

from ..models.enums import ActorType, EventType
from ..models.event import Event, EventCausality
from .task_store import to_db_time

_COLUMNS = (
    "event_id, task_id, task_seq, ts, type, schema_version, actor, payload, "
    "trace_id, span_id, parent_event_id, idempotency_key"
)
_PLACEHOLDERS = ", ".join("?" for _ in _COLUMNS.split(","))


class SqliteEventStore:
    """EventStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append_event(self, event: Event) -> None:
        """追加事件；不提交，事务由调用方管理"""
        await self._conn.execute(
            f"INSERT INTO events ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
            (
                event.event_id,
                event.task_id,
                event.task_seq,
                to_db_time(event.ts),
                event.type.value,
                event.schema_version,
                event.actor.value,
                json.dumps(event.payload, ensure_ascii=False, default=str),
                event.trace_id,
                event.span_id,
                event.causality.parent_event_id,
                event.causality.idempotency_key,
            ),
        )

    async def get_events_for_task(
        self,
        task_id: str,
        after_event_id: str | None = None,
    ) -> list[Event]:
        """任务事件历史，按 task_seq 正序

        after_event_id 给出时只返回其后的事件；该事件不属于此任务时返回完整历史。
        """
        if after_event_id is None:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM events WHERE task_id = ? ORDER BY task_seq ASC",
                (task_id,),
            )
        else:
            cursor = await self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM events
                WHERE task_id = ?
                  AND task_seq > COALESCE(
                      (SELECT task_seq FROM events WHERE task_id = ? AND event_id = ?), 0
                  )
                ORDER BY task_seq ASC
                """,
                (task_id, task_id, after_event_id),
            )
        rows = await cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    async def get_latest_event(self, task_id: str, event_type: EventType) -> Event | None:
        cursor = await self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM events
            WHERE task_id = ? AND type = ?
            ORDER BY task_seq DESC
            LIMIT 1
            """,
            (task_id, event_type.value),
        )
        row = await cursor.fetchone()
        return self._row_to_event(row) if row else None

    async def get_next_task_seq(self, task_id: str) -> int:
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(task_seq), 0) + 1 FROM events WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else 1

    async def check_idempotency_key(self, key: str) -> str | None:
        """幂等键对应的 task_id，不存在时返回 None"""
        cursor = await self._conn.execute(
            "SELECT task_id FROM events WHERE idempotency_key = ? LIMIT 1",
            (key,),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> Event:
        return Event(
            event_id=row[0],
            task_id=row[1],
            task_seq=row[2],
            ts=datetime.fromisoformat(row[3]),
            type=EventType(row[4]),
            schema_version=row[5],
            actor=ActorType(row[6]),
            payload=json.loads(row[7]) if row[7] else {},
            trace_id=row[8],
            span_id=row[9],
            causality=EventCausality(
                parent_event_id=row[10],
                idempotency_key=row[11],
            ),
        )
