"""健康检查路由

GET /health 只说明进程存活；GET /ready 检查 SQLite、调度器与磁盘，
profile=llm 时再探测 LiteLLM Proxy。任一项失败返回 503。
"""

import shutil
from typing import Any, Literal

import structlog
from fastapi import APIRouter, Query, Request
from starlette.responses import JSONResponse

log = structlog.get_logger()

router = APIRouter()


async def _check_sqlite(state: Any) -> tuple[str, bool]:
    try:
        cursor = await state.store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
    except Exception as e:
        return f"error: {e}", False
    return "ok", True


def _check_scheduler(state: Any) -> tuple[str, bool]:
    scheduler = getattr(state, "scheduler", None)
    if scheduler is not None and scheduler.running:
        return "running", True
    return "stopped", False


def _check_disk() -> tuple[int, bool]:
    try:
        return shutil.disk_usage("/").free // (1024 * 1024), True
    except OSError:
        return 0, False


async def _check_proxy(state: Any) -> tuple[str, bool]:
    client = getattr(state, "litellm_client", None)
    # echo 模式没有 Proxy
    if client is None:
        return "skipped", True
    try:
        healthy = await client.health_check()
    except Exception as e:
        log.warning("health_check_error", error=str(e))
        healthy = False
    return ("ok" if healthy else "unreachable"), healthy


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/ready")
async def ready(
    request: Request,
    profile: Literal["core", "llm"] = Query(
        default="core",
        description="core 仅核心检查；llm 额外探测 LiteLLM Proxy",
    ),
):
    state = request.app.state
    checks: dict[str, Any] = {}
    results: list[bool] = []

    checks["sqlite"], ok = await _check_sqlite(state)
    results.append(ok)
    checks["scheduler"], ok = _check_scheduler(state)
    results.append(ok)
    checks["disk_space_mb"], ok = _check_disk()
    results.append(ok)
    if profile == "llm":
        checks["litellm_proxy"], ok = await _check_proxy(state)
        results.append(ok)
    else:
        checks["litellm_proxy"] = "skipped"

    all_ok = all(results)
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={
            "status": "ready" if all_ok else "not_ready",
            "profile": profile,
            "checks": checks,
        },
    )
