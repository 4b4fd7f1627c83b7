"""Error taxonomy and FastAPI handlers.

Failure classes (retry at the transport boundary) are kept apart from
business errors so the webhook route can decide mechanically:
InfrastructureError -> retryable 503, everything else -> terminal.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from planwarden.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def payload_extra(self) -> dict:
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError):
    code = "forbidden"
    status_code = 403


class InvalidSignatureError(AppError):
    """Webhook payload failed authenticity verification."""
    code = "invalid_signature"
    status_code = 400


class InfrastructureError(AppError):
    """Provider API or store unreachable; the caller should retry."""
    code = "infrastructure_failure"
    status_code = 503


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class LimitReachedError(AppError):
    """User-visible quota error. Never retried automatically."""
    code = "limit_reached"
    status_code = 403

    def __init__(self, message: str, *, current_count: int, limit: int, resource_kind: str = "attendance", **kwargs):
        super().__init__(message, **kwargs)
        self.current_count = current_count
        self.limit = limit
        self.resource_kind = resource_kind

    def payload_extra(self) -> dict:
        return {
            "current_count": self.current_count,
            "limit": self.limit,
            "resource_kind": self.resource_kind,
        }


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[dict] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if extra:
        error.update(extra)
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.payload_extra())
    logger = logging.getLogger("planwarden")
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
    logger = logging.getLogger("planwarden")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("planwarden")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
