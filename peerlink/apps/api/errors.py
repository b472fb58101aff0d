from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from peerlink.apps.api.response import error_response, is_versioned_request
from peerlink.core.errors import (
    DatabaseError,
    IdentityUnavailableError,
    PeerlinkError,
    VerificationNotConfiguredError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    # Routes raise HTTPException with either a plain message or {"code", "message"}.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        return code, str(detail.get("message") or "Request failed")
    if isinstance(detail, str):
        return _default_code(status_code), detail
    return _default_code(status_code), "Request failed"


async def http_exception_handler(
    request: Request, exc: HTTPException | StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        errors=jsonable_encoder(exc.errors()),
    )
    return JSONResponse(content=payload, status_code=422)


def _domain_error_status(exc: PeerlinkError) -> tuple[int, str, str]:
    if isinstance(exc, VerificationNotConfiguredError):
        return 409, "VERIFICATION_NOT_CONFIGURED", "Token verification is not configured"
    if isinstance(exc, (IdentityUnavailableError, DatabaseError)):
        return 503, "SERVICE_UNAVAILABLE", "Identity service is temporarily unavailable."
    return 500, "INTERNAL_ERROR", "Internal server error"


async def peerlink_exception_handler(request: Request, exc: PeerlinkError) -> JSONResponse:
    status_code, code, message = _domain_error_status(exc)
    logger.warning(
        "request_failed path=%s code=%s error=%s",
        request.url.path,
        code,
        type(exc).__name__,
    )
    payload = error_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces go to the log only; clients get a stable envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
