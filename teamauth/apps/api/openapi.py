from __future__ import annotations

from typing import Any

from teamauth.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", code="BAD_REQUEST", message="Bad request"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Authentication required"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Missing required role"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response("Conflict", code="CONFLICT", message="Resource already exists"),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": ["body", "address"], "msg": "Field required", "type": "missing"}]},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

TOKEN_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _response(
        "Scope not granted",
        code="SCOPE_NOT_GRANTED",
        message="Requested scope not granted",
        details={"scopes": ["read:billing"]},
    ),
    401: _response("Invalid client", code="INVALID_CLIENT", message="Invalid client credentials"),
    502: _response("Provider unavailable", code="PROVIDER_UNAVAILABLE", message="Identity provider unavailable"),
}
