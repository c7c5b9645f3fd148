"""领域异常 -> 结构化错误响应 {"error": {"code", "message"}}"""

from fastapi import FastAPI, Request
from starlette.responses import JSONResponse
from taskrelay.core.exceptions import (
    InvalidTransitionError,
    TaskImmutableError,
    TaskNotFoundError,
    TaskRelayError,
    TaskStatusConflictError,
)

from .services.notification_service import NotificationNotFoundError

_STATUS_CODES: list[tuple[type[Exception], int]] = [
    (TaskNotFoundError, 404),
    (NotificationNotFoundError, 404),
    (InvalidTransitionError, 409),
    (TaskImmutableError, 409),
    (TaskStatusConflictError, 409),
]


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


async def _handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
    status_code = next(
        (status for exc_type, status in _STATUS_CODES if isinstance(exc, exc_type)),
        400,
    )
    return error_response(status_code, getattr(exc, "code", "BAD_REQUEST"), str(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TaskRelayError, _handle_domain_error)
    app.add_exception_handler(NotificationNotFoundError, _handle_domain_error)
