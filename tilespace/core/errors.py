"""
Application errors and the FastAPI handlers that render them.

Every error response has the same body:

    {"error": {"code", "message", "request_id", "details"?}, "detail": message}

and carries the request id in the ``x-request-id`` header. Messages of 5xx
errors are replaced by a generic one; the real message only goes to the log.
"""

import logging
from typing import Any, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from tilespace.core.logging import LOGGER_NAME, get_request_id

GENERIC_MESSAGE = "Unexpected error"

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.request_id = request_id
        self.details = details


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class PaymentRequiredError(AppError):
    code = "payment_required"
    status_code = 402


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class LimitExceededError(AppError):
    code = "limit_exceeded"
    status_code = 429


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def error_response(
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Any] = None,
) -> JSONResponse:
    body = {"error": {"code": code, "message": message, "request_id": request_id}, "detail": message}
    if details is not None:
        body["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=body, headers={"x-request-id": request_id})


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    server_side = exc.status_code >= 500
    logger.log(
        logging.ERROR if server_side else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    message = GENERIC_MESSAGE if server_side else exc.message
    return error_response(rid, exc.status_code, exc.code, message, exc.details)


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(rid, exc.status_code, code, str(exc.detail or "HTTP error"))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id(request)
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400})
    return error_response(rid, 400, "validation_error", "Invalid request body", details)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(rid, 500, "internal_error", GENERIC_MESSAGE)
