"""Error normalization and handlers."""

import logging
import builtins
from typing import Optional, Dict, Any
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from vmdash.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidQuantityError(ValidationError):
    """Quantity is not a positive integer."""
    code = "invalid_quantity"


class NotQuotableError(AppError):
    """Quantity lies outside the plan's defined pricing curve (contact sales)."""
    code = "not_quotable"
    status_code = 422


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class OperationNotPermittedError(PermissionError):
    """VM operation excluded by the account's current subscription state."""
    code = "operation_not_permitted"


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class AlreadyInProgressError(ConflictError):
    """Another mutating billing request for the same account is in flight."""
    code = "already_in_progress"


class CollaboratorUnavailableError(AppError):
    """Billing or hypervisor call failed or timed out. Safe to retry a read."""
    code = "collaborator_unavailable"
    status_code = 503
    retryable = True


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, **fields: Any) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    error.update({k: v for k, v in fields.items() if v is not None})
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(
        exc.code,
        exc.message,
        rid,
        retryable=True if exc.retryable else None,
        details=exc.details or None,
    )
    logger = logging.getLogger("vmdash")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("vmdash")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("vmdash")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
