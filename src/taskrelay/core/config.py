"""配置常量模块 -- 可通过环境变量覆盖

包含数据库路径、调度器轮询参数、触发台账保留期、递归上下文窗口等可配置常量。
"""

import os
from pathlib import Path


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("TASKRELAY_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "TASKRELAY_DB_PATH",
        str(_get_base_dir() / "sqlite" / "taskrelay.db"),
    )


def get_channel_webhooks() -> dict[str, str]:
    """解析投递渠道 webhook 配置

    格式: TASKRELAY_CHANNEL_WEBHOOKS="chat=https://...,mail=https://..."
    """
    raw = os.environ.get("TASKRELAY_CHANNEL_WEBHOOKS", "")
    webhooks: dict[str, str] = {}
    for item in raw.split(","):
        name, sep, url = item.strip().partition("=")
        if sep and name.strip() and url.strip():
            webhooks[name.strip()] = url.strip()
    return webhooks


# 调度器轮询间隔（秒）
SCHEDULER_POLL_INTERVAL_S: int = int(
    os.environ.get("TASKRELAY_SCHEDULER_POLL_INTERVAL_S", "60")
)

# 调度器前瞻窗口（分钟），同时作为回看窗口
SCHEDULER_LOOK_AHEAD_MINUTES: int = int(
    os.environ.get("TASKRELAY_SCHEDULER_LOOK_AHEAD_MINUTES", "5")
)

# 触发台账保留时长（小时）
LEDGER_RETENTION_HOURS: int = int(
    os.environ.get("TASKRELAY_LEDGER_RETENTION_HOURS", "24")
)

# 调度器状态中展示的最近触发条数
RECENT_FIRED_LIMIT: int = 10

# 递归任务的历史上下文窗口（条）
PRIOR_CONTEXT_WINDOW: int = int(
    os.environ.get("TASKRELAY_PRIOR_CONTEXT_WINDOW", "10")
)

# 单条历史上下文截断长度（字符）
PRIOR_CONTEXT_ENTRY_MAX_CHARS: int = int(
    os.environ.get("TASKRELAY_PRIOR_CONTEXT_ENTRY_MAX_CHARS", "2000")
)

# 事件 payload 中响应摘要的最大字节数
RESPONSE_SUMMARY_MAX_BYTES: int = int(
    os.environ.get("TASKRELAY_RESPONSE_SUMMARY_MAX_BYTES", "8192")
)

# SSE 心跳间隔（秒）
SSE_HEARTBEAT_INTERVAL: int = int(
    os.environ.get("TASKRELAY_SSE_HEARTBEAT_INTERVAL", "15")
)

# 内存通知上限，超出后淘汰最旧的
NOTIFICATION_MAX: int = int(os.environ.get("TASKRELAY_NOTIFICATION_MAX", "1000"))

# 渠道发送超时（秒）
CHANNEL_SEND_TIMEOUT_S: int = int(
    os.environ.get("TASKRELAY_CHANNEL_SEND_TIMEOUT_S", "10")
)

# 交付物分隔标签与“无交付物”哨兵
DELIVERABLE_TAG: str = "deliverable"
NO_DELIVERABLE_SENTINEL: str = "NO_DELIVERABLE"
