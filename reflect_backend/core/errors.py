"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from reflect_backend.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def extra_payload(self) -> Dict[str, Any]:
        return {}


class AuthenticationError(AppError):
    """Bearer credential missing, malformed, or lacking required claims."""
    code = "unauthorized"
    status_code = 401


class InvalidPayloadError(AppError, ValueError):
    code = "invalid_payload"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class NotEntitledError(AppError):
    """Business-rule denial; `reason` is the verdict's machine-readable code."""
    code = "not_entitled"
    status_code = 403

    def __init__(self, reason: str, message: Optional[str] = None, **kwargs):
        super().__init__(message or f"Journal creation not allowed: {reason}", **kwargs)
        self.reason = reason

    def extra_payload(self) -> Dict[str, Any]:
        return {"reason": self.reason}


class CountUnavailableError(AppError):
    """Saved-journal count could not be read; never guess a count."""
    code = "count_unavailable"
    status_code = 500
    retryable = True


class DependencyUnavailableError(AppError):
    """Billing provider or identity directory call failed or timed out."""
    code = "dependency_unavailable"
    status_code = 503
    retryable = True


class UserNotFoundError(NotFoundError):
    code = "user_not_found"


_HTTP_CODES = {401: "unauthorized", 403: "forbidden", 404: "not_found", 405: "method_not_allowed"}

logger = logging.getLogger("reflect")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _respond(status_code: int, code: str, message: str, rid: str, **extra: Any) -> JSONResponse:
    body = {"error": code, "message": message, "request_id": rid, **extra}
    return JSONResponse(status_code=status_code, content=body, headers={"x-request-id": rid})


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    extra = exc.extra_payload()
    if exc.retryable:
        extra["retryable"] = True
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"error_code": exc.code, "status": exc.status_code, "error_message": exc.message},
    )
    return _respond(exc.status_code, exc.code, exc.message, rid, **extra)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"error_code": code, "status": exc.status_code})
    return _respond(exc.status_code, code, str(exc.detail or "HTTP error"), _request_id(request))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation.error", extra={"error_code": "invalid_payload", "status": 400})
    return _respond(400, "invalid_payload", "Request body failed validation", _request_id(request))


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"error_code": "internal_error"})
    return _respond(500, "internal_error", "Unexpected error", _request_id(request))
