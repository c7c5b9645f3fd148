"""TaskStore SQLite 实现

tasks 表保存任务当前状态，变更由 transaction 模块与事件一起原子提交，
此处仅提供数据库操作，不自动提交事务。
"""

import json
from datetime import UTC, datetime
from typing import Any

import aiosqlite
from pydantic import BaseModel

from ..models.enums import TaskStatus
from ..models.task import DeliveryAction, Task, TaskFilter, TaskPointers, WorkItem

_COLUMNS = (
    "task_id, type, source_type, source_ref, title, instructions, status, "
    "session_id, recurrence_id, occurrence_date, scheduled_for, started_at, "
    "completed_at, deleted_at, created_at, updated_at, created_by, work, "
    "delivery, pointers"
)

# 允许通过 update_task_fields 修改的列
_UPDATABLE_COLUMNS = frozenset(
    {
        "title",
        "instructions",
        "source_ref",
        "scheduled_for",
        "started_at",
        "completed_at",
        "deleted_at",
        "work",
        "delivery",
    }
)


def to_db_time(value: datetime | None) -> str | None:
    """统一存储为 UTC ISO-8601（微秒精度），保证字符串比较即时间比较"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_db_value(column: str, value: Any) -> Any:
    if column in ("work", "delivery"):
        return json.dumps(
            [item.model_dump(mode="json") if isinstance(item, BaseModel) else item
             for item in value],
            ensure_ascii=False,
        )
    if isinstance(value, datetime):
        return to_db_time(value)
    return value


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """创建任务记录"""
        await self._conn.execute(
            f"INSERT INTO tasks ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task.task_id,
                task.type.value,
                task.source_type.value,
                task.source_ref,
                task.title,
                task.instructions,
                task.status.value,
                task.session_id,
                task.recurrence_id,
                task.occurrence_date,
                to_db_time(task.scheduled_for),
                to_db_time(task.started_at),
                to_db_time(task.completed_at),
                to_db_time(task.deleted_at),
                to_db_time(task.created_at),
                to_db_time(task.updated_at),
                task.created_by.value,
                _to_db_value("work", task.work),
                _to_db_value("delivery", task.delivery),
                task.pointers.model_dump_json(),
            ),
        )

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务（包括已软删除的任务）"""
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """查询任务列表，按 created_at 倒序；默认排除 deleted"""
        task_filter = task_filter or TaskFilter()
        clauses: list[str] = []
        params: list[Any] = []

        if task_filter.status:
            placeholders = ", ".join("?" for _ in task_filter.status)
            clauses.append(f"status IN ({placeholders})")
            params.extend(s.value for s in task_filter.status)
        if not task_filter.include_deleted:
            clauses.append("status != ?")
            params.append(TaskStatus.DELETED.value)
        if task_filter.type is not None:
            clauses.append("type = ?")
            params.append(task_filter.type.value)
        if task_filter.source_type is not None:
            clauses.append("source_type = ?")
            params.append(task_filter.source_type.value)
        if task_filter.recurrence_id is not None:
            clauses.append("recurrence_id = ?")
            params.append(task_filter.recurrence_id)

        sql = f"SELECT {_COLUMNS} FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, task_id DESC"
        if task_filter.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([task_filter.limit, task_filter.offset])
        elif task_filter.offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(task_filter.offset)

        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def update_task_status(
        self,
        task_id: str,
        status: str,
        updated_at: str,
        latest_event_id: str,
        expected_status: str | None = None,
        extra_fields: dict[str, Any] | None = None,
    ) -> int:
        """更新任务状态，可附带白名单字段

        expected_status 非空时仅在当前状态匹配时更新（乐观并发）。

        Returns:
            受影响行数
        """
        assignments = [
            "status = ?",
            "updated_at = ?",
            "pointers = json_set(pointers, '$.latest_event_id', ?)",
        ]
        params: list[Any] = [status, updated_at, latest_event_id]
        for column, value in (extra_fields or {}).items():
            if column not in _UPDATABLE_COLUMNS:
                raise ValueError(f"column not updatable: {column}")
            assignments.append(f"{column} = ?")
            params.append(_to_db_value(column, value))

        sql = f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = ?"
        params.append(task_id)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)

        cursor = await self._conn.execute(sql, params)
        return cursor.rowcount

    async def update_task_fields(
        self,
        task_id: str,
        fields: dict[str, Any],
        updated_at: str,
        latest_event_id: str,
    ) -> int:
        """更新非状态字段（白名单）"""
        assignments = [
            "updated_at = ?",
            "pointers = json_set(pointers, '$.latest_event_id', ?)",
        ]
        params: list[Any] = [updated_at, latest_event_id]
        for column, value in fields.items():
            if column not in _UPDATABLE_COLUMNS:
                raise ValueError(f"column not updatable: {column}")
            assignments.append(f"{column} = ?")
            params.append(_to_db_value(column, value))
        params.append(task_id)
        cursor = await self._conn.execute(
            f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = ?",
            params,
        )
        return cursor.rowcount

    async def find_session_for_recurrence(self, recurrence_id: str) -> str | None:
        """递归分组中最早任务的 session_id"""
        cursor = await self._conn.execute(
            """
            SELECT session_id FROM tasks
            WHERE recurrence_id = ?
            ORDER BY created_at ASC, task_id ASC
            LIMIT 1
            """,
            (recurrence_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def find_by_occurrence(
        self,
        recurrence_id: str,
        occurrence_date: str,
    ) -> Task | None:
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE recurrence_id = ? AND occurrence_date = ?",
            (recurrence_id, occurrence_date),
        )
        row = await cursor.fetchone()
        return self._row_to_task(row) if row else None

    async def list_due_tasks(self, now: datetime) -> list[Task]:
        """可执行的 pending 任务：未设计划时间或计划时间已到，按 COALESCE(计划, 创建) 正序"""
        cursor = await self._conn.execute(
            f"""
            SELECT {_COLUMNS} FROM tasks
            WHERE status = ?
              AND (scheduled_for IS NULL OR scheduled_for <= ?)
            ORDER BY COALESCE(scheduled_for, created_at) ASC
            """,
            (TaskStatus.PENDING.value, to_db_time(now)),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row[0],
            type=row[1],
            source_type=row[2],
            source_ref=row[3],
            title=row[4],
            instructions=row[5],
            status=row[6],
            session_id=row[7],
            recurrence_id=row[8],
            occurrence_date=row[9],
            scheduled_for=_from_db_time(row[10]),
            started_at=_from_db_time(row[11]),
            completed_at=_from_db_time(row[12]),
            deleted_at=_from_db_time(row[13]),
            created_at=datetime.fromisoformat(row[14]),
            updated_at=datetime.fromisoformat(row[15]),
            created_by=row[16],
            work=[WorkItem(**item) for item in json.loads(row[17])],
            delivery=[DeliveryAction(**item) for item in json.loads(row[18])],
            pointers=TaskPointers(**json.loads(row[19])),
        )
