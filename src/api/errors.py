from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from src.workflow.errors import (
    AllocationExhausted,
    ExternalServiceError,
    NotConfigured,
    NotFound,
    ValidationError,
    WorkflowError,
)


_logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


def api_error_from_workflow(exc: WorkflowError) -> APIError:
    """Map a domain error onto the HTTP error envelope."""
    if isinstance(exc, NotFound):
        return APIError(status_code=404, code="not_found", message=str(exc))
    if isinstance(exc, ValidationError):
        return APIError(status_code=400, code="invalid_argument", message=str(exc))
    if isinstance(exc, NotConfigured):
        details = {"missing": exc.missing} if exc.missing else None
        return APIError(status_code=503, code="not_configured", message=str(exc), details=details)
    if isinstance(exc, AllocationExhausted):
        return APIError(
            status_code=409,
            code="conflict",
            message=str(exc),
            details={"last_attempted_id": exc.last_attempted_id},
        )
    if isinstance(exc, ExternalServiceError):
        return APIError(status_code=502, code=exc.category.value, message=str(exc))
    return APIError(status_code=500, code="internal", message="Internal server error.")


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def workflow_error_handler(req: Request, exc: WorkflowError) -> JSONResponse:
    return await api_error_handler(req, api_error_from_workflow(exc))


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    _logger.exception("unhandled error on %s %s", req.method, req.url.path, exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
    )
