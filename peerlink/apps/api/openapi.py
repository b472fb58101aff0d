from __future__ import annotations

from typing import Any

from peerlink.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_doc(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_doc("Bad request", "BAD_REQUEST", "first_name is required"),
    404: _error_doc("Not found", "NOT_FOUND", "Identity not found"),
    422: _error_doc("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error_doc("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _error_doc(
        "Identity store unavailable",
        "SERVICE_UNAVAILABLE",
        "Identity service is temporarily unavailable.",
    ),
}

VERIFY_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_doc("Token rejected", "AUTH_UNAUTHORIZED", "Token verification failed"),
    409: _error_doc(
        "Verification not configured",
        "VERIFICATION_NOT_CONFIGURED",
        "Token verification is not configured",
    ),
}
