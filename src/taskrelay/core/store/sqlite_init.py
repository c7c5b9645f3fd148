"""SQLite 数据库初始化

PRAGMA 配置 + 表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id         TEXT PRIMARY KEY,
    type            TEXT NOT NULL,
    source_type     TEXT NOT NULL,
    source_ref      TEXT,
    title           TEXT NOT NULL DEFAULT '',
    instructions    TEXT NOT NULL DEFAULT '',
    status          TEXT NOT NULL DEFAULT 'pending',
    session_id      TEXT NOT NULL,
    recurrence_id   TEXT,
    occurrence_date TEXT,
    scheduled_for   TEXT,
    started_at      TEXT,
    completed_at    TEXT,
    deleted_at      TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    created_by      TEXT NOT NULL DEFAULT 'user',
    work            TEXT NOT NULL DEFAULT '[]',
    delivery        TEXT NOT NULL DEFAULT '[]',
    pointers        TEXT NOT NULL DEFAULT '{}'
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_recurrence ON tasks(recurrence_id, created_at);",
    # 同一递归分组内每个发生时间只有一个任务
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_occurrence "
        "ON tasks(recurrence_id, occurrence_date) "
        "WHERE recurrence_id IS NOT NULL AND occurrence_date IS NOT NULL;"
    ),
]

# events 表 DDL
_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS events (
    event_id        TEXT PRIMARY KEY,
    task_id         TEXT NOT NULL,
    task_seq        INTEGER NOT NULL,
    ts              TEXT NOT NULL,
    type            TEXT NOT NULL,
    schema_version  INTEGER NOT NULL DEFAULT 1,
    actor           TEXT NOT NULL,
    payload         TEXT NOT NULL DEFAULT '{}',
    trace_id        TEXT NOT NULL DEFAULT '',
    span_id         TEXT NOT NULL DEFAULT '',
    parent_event_id TEXT,
    idempotency_key TEXT,

    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);
"""

_EVENTS_INDEXES = [
    # 任务内事件序号唯一约束（确保 task_seq 严格单调递增）
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_task_seq ON events(task_id, task_seq);",
    "CREATE INDEX IF NOT EXISTS idx_events_task_ts ON events(task_id, ts);",
    (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_idempotency_key "
        "ON events(idempotency_key) WHERE idempotency_key IS NOT NULL;"
    ),
]

# 触发台账：主键即去重键
_FIRED_TRIGGERS_DDL = """
CREATE TABLE IF NOT EXISTS fired_triggers (
    event_uid       TEXT NOT NULL,
    occurrence_key  TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    scheduled_start TEXT NOT NULL,
    fired_at        TEXT NOT NULL,
    task_id         TEXT,

    PRIMARY KEY (event_uid, occurrence_key)
);
"""

_FIRED_TRIGGERS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_fired_triggers_fired_at ON fired_triggers(fired_at DESC);",
]

# 任务-会话软关联，不加外键，孤儿链接在查询时过滤
_TASK_CONVERSATIONS_DDL = """
CREATE TABLE IF NOT EXISTS task_conversations (
    task_id         TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    linked_at       TEXT NOT NULL,

    PRIMARY KEY (task_id, conversation_id)
);
"""

_TASK_CONVERSATIONS_INDEXES = [
    (
        "CREATE INDEX IF NOT EXISTS idx_task_conversations_conversation "
        "ON task_conversations(conversation_id, linked_at DESC);"
    ),
]

_EXECUTION_LOG_DDL = """
CREATE TABLE IF NOT EXISTS execution_log (
    entry_id      TEXT PRIMARY KEY,
    task_id       TEXT NOT NULL,
    recurrence_id TEXT,
    ts            TEXT NOT NULL,
    kind          TEXT NOT NULL,
    content       TEXT NOT NULL DEFAULT ''
);
"""

_EXECUTION_LOG_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_execution_log_task ON execution_log(task_id, entry_id);",
    (
        "CREATE INDEX IF NOT EXISTS idx_execution_log_recurrence "
        "ON execution_log(recurrence_id, entry_id);"
    ),
]


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    for ddl in (
        _TASKS_DDL,
        _EVENTS_DDL,
        _FIRED_TRIGGERS_DDL,
        _TASK_CONVERSATIONS_DDL,
        _EXECUTION_LOG_DDL,
    ):
        await conn.execute(ddl)

    for idx_sql in (
        _TASKS_INDEXES
        + _EVENTS_INDEXES
        + _FIRED_TRIGGERS_INDEXES
        + _TASK_CONVERSATIONS_INDEXES
        + _EXECUTION_LOG_INDEXES
    ):
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效"""
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
