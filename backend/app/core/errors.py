"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the alert pipeline
    • Retryability classification used by the job queue
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Usage:
    from backend.app.core.errors import (
        AlertPipelineError,
        NotFoundError,
        ValidationError,
        StoreUnavailableError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", id="6651f0c2")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class AlertPipelineError(Exception):
    """Base exception for all application errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(AlertPipelineError):
    """Resource not found (404)."""

    # a missing alert gets one more attempt before dead-lettering
    retryable = True

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(AlertPipelineError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class ForbiddenError(AlertPipelineError):
    """Caller may not act on this resource (403)."""

    def __init__(self, message: str = "Not allowed", **details: Any):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
            details=details,
        )


class ConflictError(AlertPipelineError):
    """Request conflicts with the current state of the resource (409)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=409,
            error_code="CONFLICT",
            details=details,
        )


class InvalidTransitionError(AlertPipelineError):
    """Alert status change violates the forward-only state machine (409)."""

    def __init__(self, alert_id: str, current: str, target: str):
        super().__init__(
            message=f"Alert {alert_id} cannot move from {current} to {target}",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"alert_id": alert_id, "current": current, "target": target},
        )


class StoreUnavailableError(AlertPipelineError):
    """Backing store unreachable (503). Transient."""

    retryable = True

    def __init__(self, store: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Store '{store}' unavailable: {message}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"store": store, **details},
        )


class StoreRejectedError(AlertPipelineError):
    """Backing store refused the statement or its data (500). Permanent."""

    def __init__(self, store: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Store '{store}' rejected the write: {message}",
            status_code=500,
            error_code="STORE_REJECTED",
            details={"store": store, **details},
        )


class ExternalServiceError(AlertPipelineError):
    """External provider call failed (502). Transient."""

    retryable = True

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class EnqueueError(AlertPipelineError):
    """Alert was persisted but its processing job could not be scheduled (503)."""

    def __init__(self, alert_id: str, message: str = ""):
        super().__init__(
            message=f"Alert {alert_id} created but not scheduled: {message}",
            status_code=503,
            error_code="ENQUEUE_FAILED",
            details={"alert_id": alert_id},
        )


def is_retryable(exc: BaseException) -> bool:
    """Job-level retry decision. Unknown errors are treated as transient."""
    if isinstance(exc, AlertPipelineError):
        return exc.retryable
    return True


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(AlertPipelineError)
    async def handle_pipeline_error(request: Request, exc: AlertPipelineError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed: %s", exc.errors())
        return _build_error_response(
            422, "VALIDATION_ERROR", "Invalid request body",
            {"errors": jsonable_errors(exc)}, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Strip non-serialisable context from pydantic error entries."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
