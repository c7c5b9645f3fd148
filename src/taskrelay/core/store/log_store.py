"""执行日志存储 -- 任务的内部工作记录

递归任务从这里读取同一 recurrence_id 下先前发生的有界历史窗口。
"""

from datetime import datetime

import aiosqlite

from ..models.log import LogEntry, LogEntryKind
from .task_store import to_db_time

_COLUMNS = "entry_id, task_id, recurrence_id, ts, kind, content"


class SqliteExecutionLogStore:
    """ExecutionLogStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append(self, entry: LogEntry) -> None:
        """追加日志条目并提交"""
        await self._conn.execute(
            f"INSERT INTO execution_log ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (
                entry.entry_id,
                entry.task_id,
                entry.recurrence_id,
                to_db_time(entry.ts),
                entry.kind.value,
                entry.content,
            ),
        )
        await self._conn.commit()

    async def list_for_task(
        self,
        task_id: str,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LogEntry]:
        """任务日志，按写入顺序"""
        sql = f"SELECT {_COLUMNS} FROM execution_log WHERE task_id = ? ORDER BY rowid ASC"
        params: list = [task_id]
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def recent_for_recurrence(
        self,
        recurrence_id: str,
        limit: int,
        exclude_task_id: str | None = None,
        kinds: list[LogEntryKind] | None = None,
    ) -> list[LogEntry]:
        """递归分组最近 limit 条日志，按时间正序返回"""
        clauses = ["recurrence_id = ?"]
        params: list = [recurrence_id]
        if exclude_task_id is not None:
            clauses.append("task_id != ?")
            params.append(exclude_task_id)
        if kinds:
            clauses.append(f"kind IN ({', '.join('?' for _ in kinds)})")
            params.extend(k.value for k in kinds)
        params.append(limit)

        cursor = await self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM execution_log
            WHERE {' AND '.join(clauses)}
            ORDER BY rowid DESC
            LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in reversed(rows)]

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row) -> LogEntry:
        return LogEntry(
            entry_id=row[0],
            task_id=row[1],
            recurrence_id=row[2],
            ts=datetime.fromisoformat(row[3]),
            kind=LogEntryKind(row[4]),
            content=row[5],
        )
