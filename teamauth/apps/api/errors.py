from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from teamauth.apps.api.response import error_response, is_versioned_request
from teamauth.core.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TeamAuthError,
    UnauthenticatedError,
)


logger = logging.getLogger(__name__)

# Framework-raised statuses reuse the codes of the matching typed errors.
_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: UnauthenticatedError.code,
    403: ForbiddenError.code,
    404: NotFoundError.code,
    405: "METHOD_NOT_ALLOWED",
    409: ConflictError.code,
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
}


def _render(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    legacy_detail: Any = None,
) -> JSONResponse:
    # Unversioned paths keep FastAPI's bare {"detail": ...} shape.
    if not is_versioned_request(request):
        body = {"detail": legacy_detail if legacy_detail is not None else {"code": code, "message": message}}
        return JSONResponse(content=body, status_code=status_code, headers=headers)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def teamauth_error_handler(request: Request, exc: TeamAuthError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed code=%s path=%s", exc.code, request.url.path, exc_info=exc)
    # 401s advertise the bearer scheme so clients know to re-authenticate.
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return _render(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI's HTTPException subclass and routing misses alike.
    code = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    detail = exc.detail
    details: dict[str, Any] | None = None
    if isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or "Request failed")
        details = {key: value for key, value in detail.items() if key not in {"code", "message"}} or None
    else:
        message = detail if isinstance(detail, str) and detail else "Request failed"
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
        legacy_detail=detail,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    return _render(
        request,
        status_code=422,
        code=_STATUS_CODES[422],
        message="Request body or parameters are invalid",
        details={"errors": errors},
        legacy_detail=errors,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # The log keeps the traceback; the client never sees it.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _render(
        request,
        status_code=500,
        code=TeamAuthError.code,
        message="Internal server error",
        legacy_detail="Internal Server Error",
    )
