"""Error handling for the FastAPI application."""

import time
import traceback
import uuid
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException

from ..core.exceptions import (
    AccessDeniedError,
    AgentUnavailableError,
    InvalidTransitionError,
    NotFoundError,
    TaskMeshError,
    ValidationError,
)

logger = structlog.get_logger()


class ErrorDetail(BaseModel):
    """Detailed error information."""

    message: str
    field: str | None = None
    code: str | None = None
    context: dict[str, Any] | None = None


class APIErrorResponse(BaseModel):
    """Standardized API error response."""

    success: bool = False
    data: Any | None = None
    error: str
    details: list[ErrorDetail] | None = None
    timestamp: float
    request_id: str
    path: str | None = None
    method: str | None = None


# Most specific first; the first match wins.
ERROR_STATUS: list[tuple[type[TaskMeshError], int, str]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, "RESOURCE_NOT_FOUND"),
    (ValidationError, status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "INVALID_TRANSITION"),
    (AgentUnavailableError, status.HTTP_409_CONFLICT, "AGENT_UNAVAILABLE"),
    (AccessDeniedError, status.HTTP_403_FORBIDDEN, "ACCESS_DENIED"),
]


def status_for(exc: TaskMeshError) -> tuple[int, str]:
    """HTTP status code and error code for a domain exception."""
    for error_type, status_code, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"


def create_error_response(
    request: Request,
    status_code: int,
    message: str,
    details: list[ErrorDetail] | None = None,
    error_code: str | None = None,
) -> JSONResponse:
    """Create standardized error response."""

    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    error_response = APIErrorResponse(
        error=message,
        details=details,
        timestamp=time.time(),
        request_id=request_id,
        path=str(request.url.path),
        method=request.method,
    )

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "API error occurred",
        status_code=status_code,
        error_message=message,
        error_code=error_code,
        request_id=request_id,
        path=request.url.path,
        method=request.method,
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(),
    )


async def taskmesh_exception_handler(request: Request, exc: TaskMeshError) -> JSONResponse:
    """Map domain exceptions onto HTTP status codes."""
    status_code, code = status_for(exc)
    if status_code >= 500:
        # Store and executor failures stay out of the public message.
        logger.error(
            "Internal error in request",
            exception_type=type(exc).__name__,
            exception_message=str(exc),
            path=request.url.path,
        )
        message = "An internal error occurred"
    else:
        message = str(exc)
    return create_error_response(request, status_code, message, error_code=code)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    details = [
        ErrorDetail(
            message=error.get("msg", "Validation error"),
            field=" -> ".join(str(loc) for loc in error.get("loc", [])),
            code=error.get("type"),
        )
        for error in exc.errors()
    ]
    return create_error_response(
        request=request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Request validation failed",
        details=details,
        error_code="VALIDATION_ERROR",
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions raised by routing."""
    return create_error_response(
        request=request,
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions safely."""

    request_id = getattr(request.state, "request_id", str(uuid.uuid4()))

    logger.error(
        "Unhandled exception occurred",
        exception_type=type(exc).__name__,
        exception_message=str(exc),
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        traceback=traceback.format_exc(),
    )

    return create_error_response(
        request=request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        error_code="UNEXPECTED_ERROR",
    )


def setup_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TaskMeshError, taskmesh_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
