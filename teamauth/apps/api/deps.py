from __future__ import annotations

import logging
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.config import Settings
from teamauth.core.errors import TeamAuthError, UnauthenticatedError
from teamauth.persistence.db import get_session
from teamauth.services.audit import get_request_context, record_event
from teamauth.services.auth.cookies import CookieDomain, CookieDomainResolver
from teamauth.services.auth.provider import ProviderVerifier
from teamauth.services.auth.tokens import TokenService
from teamauth.services.authz.engine import PermissionCache
from teamauth.services.guard import AccessGuard, AccessPolicy, GuardContext, Principal


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_cookie_resolver(request: Request) -> CookieDomainResolver:
    return request.app.state.cookie_resolver


def get_provider_verifier(request: Request) -> ProviderVerifier:
    return request.app.state.provider_verifier


def get_permission_cache(request: Request) -> PermissionCache:
    return request.app.state.permission_cache


def get_guard(request: Request) -> AccessGuard:
    return request.app.state.guard


def request_host(request: Request) -> str:
    return request.headers.get("host") or request.url.hostname or ""


def cookie_domain_for(request: Request) -> CookieDomain:
    return get_cookie_resolver(request).resolve(request_host(request))


def request_audience(request: Request) -> str:
    # Tokens are minted for, and only accepted under, the request's cookie domain.
    return cookie_domain_for(request).audience


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthenticatedError("Missing or invalid bearer token")
    return parts[1]


def extract_credential(request: Request) -> str | None:
    # An explicit Authorization header wins over the session cookie.
    bearer = _parse_bearer_token(request.headers.get("Authorization"))
    if bearer:
        return bearer
    return request.cookies.get(get_app_settings(request).access_cookie_name) or None


async def _record_denial(request: Request, ctx: GuardContext | None, exc: TeamAuthError) -> None:
    # Denials are written in their own transaction so they outlive the request's rollback.
    claims = ctx.claims if ctx is not None else None
    actor_user_id = claims.subject if claims is not None and not claims.is_service else None
    request_ctx = get_request_context(request)
    await record_event(
        session=None,
        action="access_denied",
        outcome="failure",
        actor_user_id=actor_user_id,
        actor_role="service" if claims is not None and claims.is_service else None,
        client_name=claims.client_name if claims is not None else None,
        entity_type="endpoint",
        entity_id=request.url.path,
        payload={"method": request.method, "code": exc.code},
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )
    logger.info(
        "access_denied path=%s method=%s code=%s actor_user_id=%s",
        request.url.path,
        request.method,
        exc.code,
        actor_user_id,
    )


def require_access(policy: AccessPolicy) -> Callable[..., Awaitable[Principal]]:
    """Build the per-endpoint dependency that runs the guard chain for ``policy``."""

    async def _dependency(request: Request, db: AsyncSession = Depends(get_db)) -> Principal:
        guard = get_guard(request)
        ctx: GuardContext | None = None
        try:
            ctx = guard.new_context(
                db,
                extract_credential(request),
                policy,
                audience=request_audience(request),
                method=request.method,
                path_params=dict(request.path_params),
            )
            principal = await guard.run(ctx)
        except TeamAuthError as exc:
            await _record_denial(request, ctx, exc)
            raise
        # Read back by the response middleware to sanitize service responses.
        request.state.principal = principal
        return principal

    return _dependency
