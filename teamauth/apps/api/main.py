from __future__ import annotations

import json
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from teamauth.apps.api.errors import (
    http_exception_handler,
    teamauth_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from teamauth.apps.api.response import API_VERSION, is_versioned_request
from teamauth.apps.api.routes.audit import router as audit_router
from teamauth.apps.api.routes.auth import router as auth_router
from teamauth.apps.api.routes.health import router as health_router
from teamauth.apps.api.routes.identity import router as identity_router
from teamauth.apps.api.routes.roles import router as roles_router
from teamauth.apps.api.routes.sso import router as sso_router
from teamauth.apps.api.routes.users import router as users_router
from teamauth.core.config import Settings, get_settings, validate_settings
from teamauth.core.errors import TeamAuthError
from teamauth.core.logging import configure_logging
from teamauth.services.auth.cookies import CookieDomainResolver
from teamauth.services.auth.provider import ProviderVerifier
from teamauth.services.auth.tokens import TokenService
from teamauth.services.authz.engine import PermissionCache
from teamauth.services.guard import AccessGuard, sanitize_for_principal


logger = logging.getLogger(__name__)

_DOCS_PATHS = (f"/{API_VERSION}/openapi.json", f"/{API_VERSION}/docs")
# Endpoints reachable without a credential; everything else is documented as bearer-protected.
_ANONYMOUS_PATHS = frozenset(
    f"/{API_VERSION}{path}"
    for path in (
        "/health",
        "/auth/login",
        "/auth/refresh",
        "/auth/logout",
        "/auth/provider/exchange",
        "/auth/token",
        "/auth/cookie-domain",
        "/identity/emails/verify",
        "/sso/authorize",
        "/sso/token",
    )
)
_ROUTERS = (auth_router, sso_router, identity_router, roles_router, users_router, audit_router, health_router)


def _already_enveloped(payload: Any) -> bool:
    if not isinstance(payload, dict) or "data" not in payload:
        return False
    meta = payload.get("meta")
    return isinstance(meta, dict) and meta.get("api_version") == API_VERSION


def _needs_envelope(request: Request, response: Response) -> bool:
    content_type = response.headers.get("content-type") or ""
    return (
        response.status_code < 400
        and content_type.startswith("application/json")
        and is_versioned_request(request)
        and not request.url.path.startswith(_DOCS_PATHS)
    )


async def _enveloped(request: Request, response: Response, request_id: str) -> Response:
    """Re-emit a JSON success body inside the versioned envelope.

    Bodies from service principals are scrubbed of secret-bearing fields on
    the way out. Headers are copied as raw pairs so every Set-Cookie survives.
    """
    raw_body = b"".join([chunk async for chunk in response.body_iterator])
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        payload = None
    if payload is None:
        passthrough = Response(content=raw_body, status_code=response.status_code)
        passthrough.raw_headers = list(response.raw_headers)
        return passthrough
    if not _already_enveloped(payload):
        payload = {"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}}
    payload["data"] = sanitize_for_principal(getattr(request.state, "principal", None), payload["data"])
    rebuilt = JSONResponse(content=payload, status_code=response.status_code)
    rebuilt.raw_headers.extend(
        (key, value) for key, value in response.raw_headers if key.lower() not in {b"content-length", b"content-type"}
    )
    return rebuilt


def _openapi_schema(app: FastAPI) -> dict[str, Any]:
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
    schema.setdefault("components", {}).setdefault("securitySchemes", {})["BearerAuth"] = {
        "type": "http",
        "scheme": "bearer",
        "description": "Session access token or client-credentials service token",
    }
    for path, operations in schema.get("paths", {}).items():
        if path in _ANONYMOUS_PATHS:
            continue
        for operation in operations.values():
            operation.setdefault("security", [{"BearerAuth": []}])
    app.openapi_schema = schema
    return schema


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the API with its services constructed once from ``settings``.

    Configuration is validated here so a bad deployment fails at start-up
    instead of on the first login.
    """
    settings = validate_settings(settings or get_settings())
    configure_logging(settings.log_level)
    # Docs live under the versioned prefix; the bare /docs only redirects there.
    app = FastAPI(title="teamauth API", docs_url=None, redoc_url=None)

    permission_cache = PermissionCache(
        ttl_s=settings.permission_cache_ttl_s, max_entries=settings.permission_cache_max_entries
    )
    token_service = TokenService(settings)
    app.state.settings = settings
    app.state.permission_cache = permission_cache
    app.state.token_service = token_service
    app.state.cookie_resolver = CookieDomainResolver(settings)
    app.state.provider_verifier = ProviderVerifier(settings)
    app.state.guard = AccessGuard(token_service, permission_cache)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Caller-supplied ids are kept so logs correlate across the suite.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        request.state.principal = None
        started = time.monotonic()
        response = await call_next(request)
        if _needs_envelope(request, response):
            response = await _enveloped(request, response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000.0,
            request_id,
        )
        return response

    app.add_exception_handler(TeamAuthError, teamauth_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Load balancers poll the bare path.
    app.include_router(health_router, include_in_schema=False)

    @app.get(_DOCS_PATHS[0], include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get(_DOCS_PATHS[1], include_in_schema=False)
    async def versioned_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=_DOCS_PATHS[0], title=f"teamauth API {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url=_DOCS_PATHS[1])

    app.openapi = lambda: _openapi_schema(app)  # type: ignore[method-assign]

    return app


app = create_app()
