"""structlog 与可选 Logfire 的初始化

TASKRELAY_LOG_FORMAT=json 输出结构化 JSON，其余取值使用控制台渲染；
TASKRELAY_LOG_LEVEL 控制根日志级别。标准库 logging 的记录（uvicorn、litellm 等）
经 ProcessorFormatter 走同一条处理链。
"""

import logging
import os

import structlog
from fastapi import FastAPI

# 第三方库的 INFO 日志过于嘈杂，统一压到 WARNING
_NOISY_LOGGERS = ("LiteLLM", "httpx", "aiosqlite")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_format: str | None = None, log_level: str | None = None) -> None:
    log_format = log_format or os.environ.get("TASKRELAY_LOG_FORMAT", "dev")
    level_name = (log_level or os.environ.get("TASKRELAY_LOG_LEVEL", "INFO")).upper()

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(log_format),
            foreign_pre_chain=pre_chain,
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level_name, logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logfire(app: FastAPI) -> None:
    """LOGFIRE_SEND_TO_LOGFIRE=true 时启用 Logfire（需安装 apm extra）"""
    if os.environ.get("LOGFIRE_SEND_TO_LOGFIRE", "false").lower() != "true":
        return
    try:
        import logfire

        logfire.configure()
        logfire.instrument_fastapi(app)
    except Exception as e:
        # 初始化失败时只保留本地日志
        structlog.get_logger().warning("logfire_init_failed", error=str(e))
