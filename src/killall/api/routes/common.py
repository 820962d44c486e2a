"""Common route helpers."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from killall.core.errors import (
    ConfigurationError,
    DuplicateScheduleError,
    InvalidTransitionError,
    KillallError,
    NotFoundError,
    SchedulerNotRunningError,
    ValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[KillallError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (DuplicateScheduleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (SchedulerNotRunningError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: KillallError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_detail(exc: KillallError) -> dict[str, object]:
    detail: dict[str, object] = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, ValidationError) and exc.field:
        detail["field"] = exc.field
    if isinstance(exc, InvalidTransitionError):
        detail["current"] = exc.current
        detail["required"] = list(exc.allowed_from)
    return detail


def install_error_handlers(app: FastAPI) -> None:
    """Translate lifecycle errors into JSON responses."""

    @app.exception_handler(KillallError)
    async def _handle(request: Request, exc: KillallError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content={"detail": error_detail(exc)})
