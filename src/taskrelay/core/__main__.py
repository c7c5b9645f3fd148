"""CLI 入口模块 -- python -m taskrelay.core <command>

支持的命令：
  list-fired [limit]     列出最近的触发台账记录
  prune-ledger [hours]   删除早于保留期的台账记录
  list-tasks [status]    列出任务（默认排除已删除）
"""

import asyncio
import sys
from datetime import UTC, datetime, timedelta

from .config import LEDGER_RETENTION_HOURS, get_db_path
from .models import TaskFilter, TaskStatus

_USAGE = """用法: python -m taskrelay.core <command>
命令:
  list-fired [limit]     列出最近的触发台账记录
  prune-ledger [hours]   删除早于保留期的台账记录
  list-tasks [status]    列出任务"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(_USAGE)
        sys.exit(1)

    command = sys.argv[1]
    arg = sys.argv[2] if len(sys.argv) > 2 else None

    if command == "list-fired":
        asyncio.run(list_fired(int(arg) if arg else 10))
    elif command == "prune-ledger":
        asyncio.run(prune_ledger(int(arg) if arg else LEDGER_RETENTION_HOURS))
    elif command == "list-tasks":
        asyncio.run(list_tasks(TaskStatus(arg) if arg else None))
    else:
        print(f"未知命令: {command}")
        print(_USAGE)
        sys.exit(1)


async def list_fired(limit: int) -> None:
    from .store import create_store_group

    store_group = await create_store_group(get_db_path())
    try:
        records = await store_group.ledger.recent(limit)
        print(f"台账记录总数: {await store_group.ledger.count()}")
        for record in records:
            print(
                f"{record.fired_at.isoformat()}  {record.event_uid}@{record.occurrence_key}"
                f"  task={record.task_id or '-'}  {record.title}"
            )
    finally:
        await store_group.close()


async def prune_ledger(hours: int) -> None:
    from .store import create_store_group

    cutoff = datetime.now(UTC) - timedelta(hours=hours)
    store_group = await create_store_group(get_db_path())
    try:
        removed = await store_group.ledger.prune_fired_before(cutoff)
        print(f"已删除 {removed} 条早于 {cutoff.isoformat()} 的台账记录")
    finally:
        await store_group.close()


async def list_tasks(status: TaskStatus | None) -> None:
    from .store import create_store_group

    store_group = await create_store_group(get_db_path())
    try:
        task_filter = TaskFilter(
            status=[status] if status else None,
            include_deleted=status == TaskStatus.DELETED,
        )
        for task in await store_group.task_store.list_tasks(task_filter):
            print(f"{task.task_id}  {task.status.value:<12}  {task.type.value:<9}  {task.title}")
    finally:
        await store_group.close()


if __name__ == "__main__":
    main()
