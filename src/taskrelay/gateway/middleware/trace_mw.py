"""TraceMiddleware -- 为任务相关请求绑定 trace_id

trace_id 由路径中的 task_id 生成：/api/tasks/{task_id}/... 或 /api/stream/task/{task_id}。
"""

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_TASK_ID_PREFIX = "task-"


class TraceMiddleware(BaseHTTPMiddleware):
    """任务级追踪中间件"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        trace_id = None
        parts = request.url.path.split("/")
        for i, part in enumerate(parts):
            if part in ("tasks", "task") and i + 1 < len(parts):
                candidate = parts[i + 1]
                # 排除 /api/tasks/snapshot 之类的子路由
                if candidate.startswith(_TASK_ID_PREFIX):
                    trace_id = f"trace-{candidate}"
                    break

        if trace_id:
            structlog.contextvars.bind_contextvars(trace_id=trace_id)

        return await call_next(request)
