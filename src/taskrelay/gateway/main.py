"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化/关闭、推理引擎与渠道初始化、
后台执行队列与调度器的启停、路由注册。
"""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

import structlog
from fastapi import FastAPI
from taskrelay.core.config import get_channel_webhooks, get_db_path
from taskrelay.core.store import StoreGroup, create_store_group
from taskrelay.provider import (
    EchoMessageAdapter,
    LiteLLMClient,
    ReasoningEngine,
    SessionReasoningEngine,
    load_provider_config,
)

from .errors import register_error_handlers
from .middleware.logging_config import setup_logfire, setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import health, notifications, stream, tasks, triggers
from .services.channels import ChannelRegistry, build_channel_registry
from .services.dispatcher import DeliveryDispatcher
from .services.executor import TaskExecutor
from .services.notification_service import NotificationService
from .services.runner import TaskRunner
from .services.scheduler import InMemoryTriggerSource, TriggerScheduler
from .services.status_hub import StatusHub
from .services.task_service import TaskService

log = structlog.get_logger()


def attach_services(
    app: FastAPI,
    store_group: StoreGroup,
    engine: ReasoningEngine,
    registry: ChannelRegistry,
    model_alias: str = "main",
    trigger_source: InMemoryTriggerSource | None = None,
    now: Callable[[], datetime] | None = None,
) -> None:
    """组装服务并挂到 app.state（lifespan 与测试共用）"""
    hub = StatusHub()
    notification_service = NotificationService(hub)
    task_service = TaskService(store_group, hub)
    dispatcher = DeliveryDispatcher(registry, task_service)
    executor = TaskExecutor(
        task_service,
        engine,
        dispatcher,
        registry,
        notifications=notification_service,
        model_alias=model_alias,
    )
    runner = TaskRunner(executor)
    source = trigger_source or InMemoryTriggerSource(now=now)
    scheduler = TriggerScheduler(
        source,
        store_group.ledger,
        task_service,
        runner=runner,
        now=now,
    )

    app.state.store_group = store_group
    app.state.status_hub = hub
    app.state.notification_service = notification_service
    app.state.task_service = task_service
    app.state.channel_registry = registry
    app.state.executor = executor
    app.state.runner = runner
    app.state.trigger_source = source
    app.state.scheduler = scheduler


def _build_engine(app: FastAPI) -> SessionReasoningEngine:
    provider_config = load_provider_config()
    app.state.provider_config = provider_config

    if provider_config.llm_mode == "litellm":
        client = LiteLLMClient(
            proxy_base_url=provider_config.proxy_base_url,
            proxy_api_key=provider_config.proxy_api_key.get_secret_value(),
            timeout_s=provider_config.timeout_s,
        )
        # 健康检查使用
        app.state.litellm_client = client
        log.info(
            "reasoning_engine_initialized",
            mode="litellm",
            proxy_url=provider_config.proxy_base_url,
            model_alias=provider_config.model_alias,
            timeout_s=provider_config.timeout_s,
        )
        return SessionReasoningEngine(
            client,
            model_alias=provider_config.model_alias,
            system_prompt=provider_config.system_prompt,
        )

    app.state.litellm_client = None
    log.info("reasoning_engine_initialized", mode="echo")
    return SessionReasoningEngine(EchoMessageAdapter(), model_alias="echo")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期：启动时初始化存储和服务并启动后台循环，关闭时按相反顺序清理"""
    store_group = await create_store_group(get_db_path())
    engine = _build_engine(app)
    registry = build_channel_registry(get_channel_webhooks())
    attach_services(
        app,
        store_group,
        engine,
        registry,
        model_alias=engine.model_alias,
    )

    app.state.runner.start()
    await app.state.scheduler.start()

    yield

    await app.state.scheduler.stop()
    await app.state.runner.stop()
    await store_group.close()


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="taskrelay Gateway",
        version="0.1.0",
        description="任务调度、执行与投递 API",
        lifespan=lifespan,
    )

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)
    register_error_handlers(app)

    setup_logging()
    setup_logfire(app)

    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(notifications.router, tags=["notifications"])
    app.include_router(stream.router, tags=["stream"])
    app.include_router(triggers.router, tags=["triggers"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
