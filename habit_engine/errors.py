"""
Error hierarchy for the habit engine.

Every HTTP error carries a machine-readable `code` so clients can branch on it
without parsing messages.
"""
from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette import status


class HabitEngineError(Exception):
    """Base class for all application-level errors."""
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class RoutineValidationError(HabitEngineError):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "ROUTINE_INVALID"

    def __init__(self, errors: list[str]):
        super().__init__(
            message="Routine payload is invalid.",
            details={"errors": errors},
        )


class ScheduleConflictError(HabitEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "SCHEDULE_CONFLICT"

    def __init__(self, conflicting_id: int):
        super().__init__(
            message="Another active routine already starts at the same time on overlapping days.",
            details={"conflicting_routine_id": conflicting_id},
        )


class RoutineNotFoundError(HabitEngineError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "ROUTINE_NOT_FOUND"

    def __init__(self, routine_id: int):
        super().__init__(
            message=f"Routine {routine_id} not found.",
            details={"routine_id": routine_id},
        )


class RoutineArchivedError(HabitEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "ROUTINE_ARCHIVED"

    def __init__(self, routine_id: int):
        super().__init__(
            message=f"Routine {routine_id} is archived and can no longer change.",
            details={"routine_id": routine_id},
        )


class DuplicateLogError(HabitEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "DUPLICATE_LOG"

    def __init__(self, routine_id: int, day: date):
        super().__init__(
            message=f"A log for routine {routine_id} on {day} already exists.",
            details={"routine_id": routine_id, "date": str(day)},
        )


class LogAlreadyResolvedError(HabitEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "LOG_ALREADY_RESOLVED"

    def __init__(self, routine_id: int, day: date, current: str):
        super().__init__(
            message=f"Log for routine {routine_id} on {day} is already '{current}'.",
            details={"routine_id": routine_id, "date": str(day), "status": current},
        )


class RateLimitExceededError(HabitEngineError):
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"

    def __init__(self, scope: str, retry_after: int):
        super().__init__(
            message="Too many requests.",
            details={"scope": scope, "retry_after_seconds": retry_after},
        )


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

async def habit_engine_exception_handler(request: Request, exc: HabitEngineError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return structured 422 with machine-readable field errors."""
    field_errors = []
    for error in exc.errors():
        field_errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "details": {"errors": field_errors},
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on {} {}: {}", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"code": "INTERNAL_ERROR", "message": "An unexpected error occurred."},
    )
