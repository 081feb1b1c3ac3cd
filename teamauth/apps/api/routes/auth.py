from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request, Response
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.apps.api.deps import (
    cookie_domain_for,
    extract_credential,
    get_app_settings,
    get_db,
    get_guard,
    get_provider_verifier,
    get_token_service,
    request_audience,
    require_access,
)
from teamauth.apps.api.openapi import DEFAULT_ERROR_RESPONSES, TOKEN_ERROR_RESPONSES
from teamauth.apps.api.response import ApiModel, SuccessEnvelope, success_response
from teamauth.apps.api.schemas import UserResponse, iso, user_payload
from teamauth.core.errors import ForbiddenError, TeamAuthError, UnauthenticatedError
from teamauth.domain.models import LinkedEmail, User
from teamauth.persistence.repos import identity as identity_repo
from teamauth.services import identity
from teamauth.services.audit import get_request_context, record_event
from teamauth.services.authz.roles import role_label
from teamauth.services.auth.provider import exchange_provider_token
from teamauth.services.auth.tokens import SessionCredential
from teamauth.services.guard import AccessPolicy, Principal


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)

# Any authenticated user session; service tokens are refused.
SESSION_POLICY = AccessPolicy()


class LoginRequest(ApiModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)
    organization_id: str | None = None


class RefreshRequest(ApiModel):
    refresh_token: str | None = None


class LogoutRequest(ApiModel):
    refresh_token: str | None = None
    all_sessions: bool = Field(default=False, alias="all")


class ProviderExchangeRequest(ApiModel):
    provider_assertion: str = Field(min_length=1)


class ServiceTokenRequest(ApiModel):
    grant_type: Literal["client_credentials"]
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    # Space-delimited per OAuth, or a list.
    scope: str | list[str] | None = None


class SessionResponse(ApiModel):
    access_token: str
    refresh_token: str
    token_type: str
    expires_in: int
    expires_at: str | None
    session_id: str
    organization_id: str | None
    audience: str
    roles: list[dict[str, Any]]
    user: UserResponse


class ServiceTokenResponse(ApiModel):
    access_token: str
    token_type: str
    expires_in: int
    scope: str


class LogoutResponse(ApiModel):
    revoked: bool
    all_sessions: bool


class CookieDomainResponse(ApiModel):
    host: str
    domain: str | None
    shared: bool
    sso_mode: str
    audience: str


class PrincipalResponse(ApiModel):
    kind: str
    subject_id: str
    organization_id: str | None
    roles: list[str]
    permissions: list[str]
    session_id: str | None
    client_name: str | None


def set_session_cookies(request: Request, response: Response, credential: SessionCredential) -> None:
    # Domain is only emitted when the host may share cookies with its siblings.
    settings = get_app_settings(request)
    cookie = cookie_domain_for(request)
    response.set_cookie(
        settings.access_cookie_name,
        credential.access_token,
        max_age=credential.expires_in,
        path="/",
        domain=cookie.domain,
        secure=True,
        httponly=True,
        samesite="lax",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        credential.refresh_token,
        max_age=int(get_token_service(request).refresh_ttl.total_seconds()),
        path=settings.refresh_cookie_path,
        domain=cookie.domain,
        secure=True,
        httponly=True,
        samesite="lax",
    )


def _clear_session_cookies(request: Request, response: Response) -> None:
    settings = get_app_settings(request)
    cookie = cookie_domain_for(request)
    response.delete_cookie(
        settings.access_cookie_name, path="/", domain=cookie.domain, secure=True, httponly=True, samesite="lax"
    )
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        domain=cookie.domain,
        secure=True,
        httponly=True,
        samesite="lax",
    )


def credential_role_label(credential: SessionCredential) -> str | None:
    return role_label(str(item.get("role")) for item in credential.roles)


async def session_payload(db: AsyncSession, credential: SessionCredential, user: User) -> SessionResponse:
    emails = await identity_repo.list_user_emails(db, user.id)
    return SessionResponse(
        access_token=credential.access_token,
        refresh_token=credential.refresh_token,
        token_type=credential.token_type,
        expires_in=credential.expires_in,
        expires_at=iso(credential.expires_at),
        session_id=credential.session_id,
        organization_id=credential.organization_id,
        audience=credential.audience,
        roles=[dict(item) for item in credential.roles],
        user=user_payload(user, emails),
    )


async def _login_organization(
    db: AsyncSession, user: User, linked: LinkedEmail, requested: str | None
) -> str | None:
    # Explicit requests must name an organization the user belongs to.
    if requested:
        if requested not in await identity.organization_memberships(db, user_id=user.id):
            raise ForbiddenError("User is not a member of this organization")
        return requested
    # Logging in with a work email binds the session to that organization.
    if linked.kind == identity.EMAIL_KIND_WORK:
        return linked.organization_id
    return None


@router.post("/login", response_model=SuccessEnvelope[SessionResponse])
async def login(
    request: Request,
    response: Response,
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    request_ctx = get_request_context(request)
    try:
        user, linked = await identity.authenticate_password(db, email=payload.email, password=payload.password)
        organization_id = await _login_organization(db, user, linked, payload.organization_id)
        credential = await get_token_service(request).issue_session(
            db, user, audience=request_audience(request), organization_id=organization_id
        )
    except TeamAuthError as exc:
        await db.rollback()
        await record_event(
            session=None,
            action="login_failure",
            outcome="failure",
            actor_user_id=None,
            entity_type="session",
            payload={"email": payload.email.strip().lower(), "code": exc.code},
            **request_ctx,
        )
        raise
    await record_event(
        session=db,
        action="login_success",
        actor_user_id=user.id,
        actor_role=credential_role_label(credential),
        entity_type="session",
        entity_id=credential.session_id,
        payload={"method": "password", "organization_id": organization_id},
        **request_ctx,
    )
    await db.commit()
    set_session_cookies(request, response, credential)
    return success_response(request=request, data=await session_payload(db, credential, user))


@router.post("/refresh", response_model=SuccessEnvelope[SessionResponse])
async def refresh(
    request: Request,
    response: Response,
    payload: RefreshRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The body wins over the cookie so non-browser clients can refresh explicitly.
    raw_token = (payload.refresh_token if payload else None) or request.cookies.get(
        get_app_settings(request).refresh_cookie_name
    )
    if not raw_token:
        raise UnauthenticatedError("Refresh token required")
    request_ctx = get_request_context(request)
    try:
        credential = await get_token_service(request).refresh(db, raw_token, audience=request_audience(request))
    except TeamAuthError as exc:
        await db.rollback()
        await record_event(
            session=None,
            action="token_refresh_failure",
            outcome="failure",
            actor_user_id=None,
            entity_type="session",
            payload={"code": exc.code},
            **request_ctx,
        )
        raise
    user = await identity_repo.get_user(db, credential.user_id)
    await record_event(
        session=db,
        action="token_refreshed",
        actor_user_id=credential.user_id,
        actor_role=credential_role_label(credential),
        entity_type="session",
        entity_id=credential.session_id,
        **request_ctx,
    )
    await db.commit()
    set_session_cookies(request, response, credential)
    return success_response(request=request, data=await session_payload(db, credential, user))


@router.post("/logout", response_model=SuccessEnvelope[LogoutResponse])
async def logout(
    request: Request,
    response: Response,
    payload: LogoutRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """End the current session, or with ``all`` every session of the user.

    Global logout also stamps the user so access tokens issued earlier are
    rejected by the guard before they expire.
    """
    payload = payload or LogoutRequest()
    token_service = get_token_service(request)
    raw_token = payload.refresh_token or request.cookies.get(get_app_settings(request).refresh_cookie_name)
    user_id = await token_service.revoke_session(db, raw_token) if raw_token else None
    if payload.all_sessions:
        if user_id is None:
            # Without a live refresh token the access token must pass the full guard chain.
            principal = await get_guard(request).authorize(
                db, extract_credential(request), SESSION_POLICY, audience=request_audience(request), method="POST"
            )
            user_id = principal.subject_id
        await token_service.revoke_all(db, user_id)
    if user_id is not None:
        await record_event(
            session=db,
            action="logout",
            actor_user_id=user_id,
            entity_type="session",
            payload={"all": payload.all_sessions},
            **get_request_context(request),
        )
    await db.commit()
    _clear_session_cookies(request, response)
    data = LogoutResponse(revoked=user_id is not None, all_sessions=payload.all_sessions)
    return success_response(request=request, data=data)


@router.post(
    "/provider/exchange",
    response_model=SuccessEnvelope[SessionResponse],
    responses=TOKEN_ERROR_RESPONSES,
)
async def provider_exchange(
    request: Request,
    response: Response,
    payload: ProviderExchangeRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Hand-off path for hosts that cannot share cookies with the login app.
    request_ctx = get_request_context(request)
    try:
        result = await exchange_provider_token(
            db,
            assertion=payload.provider_assertion,
            verifier=get_provider_verifier(request),
            token_service=get_token_service(request),
            audience=request_audience(request),
        )
    except TeamAuthError as exc:
        await db.rollback()
        await record_event(
            session=None,
            action="provider_exchange_failure",
            outcome="failure",
            actor_user_id=None,
            entity_type="session",
            payload={"code": exc.code},
            **request_ctx,
        )
        raise
    credential = result.credential
    if result.created:
        await record_event(
            session=db,
            action="user_created",
            actor_user_id=None,
            subject_user_id=result.user.id,
            entity_type="user",
            entity_id=result.user.id,
            payload={"source": "provider", "role": identity.PROVIDER_DEFAULT_ROLE},
            **request_ctx,
        )
    await record_event(
        session=db,
        action="provider_exchange",
        actor_user_id=result.user.id,
        actor_role=credential_role_label(credential),
        entity_type="session",
        entity_id=credential.session_id,
        payload={"created": result.created, "organization_id": credential.organization_id},
        **request_ctx,
    )
    await db.commit()
    set_session_cookies(request, response, credential)
    return success_response(request=request, data=await session_payload(db, credential, result.user))


@router.post("/token", response_model=SuccessEnvelope[ServiceTokenResponse], responses=TOKEN_ERROR_RESPONSES)
async def issue_service_token(
    request: Request,
    payload: ServiceTokenRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Client-credentials grant; scopes are granted all-or-nothing.
    request_ctx = get_request_context(request)
    try:
        token = await get_token_service(request).issue_service_token(
            db,
            client_id=payload.client_id,
            client_secret=payload.client_secret,
            requested_scopes=payload.scope,
            audience=request_audience(request),
        )
    except TeamAuthError as exc:
        await db.rollback()
        await record_event(
            session=None,
            action="service_token_denied",
            outcome="failure",
            actor_user_id=None,
            entity_type="service_credential",
            entity_id=payload.client_id,
            payload={"code": exc.code, "scope": payload.scope},
            **request_ctx,
        )
        raise
    await record_event(
        session=db,
        action="service_token_issued",
        actor_user_id=None,
        actor_role="service",
        entity_type="service_credential",
        entity_id=token.client_id,
        payload={"scopes": list(token.scopes)},
        **request_ctx,
    )
    await db.commit()
    data = ServiceTokenResponse(
        access_token=token.access_token,
        token_type=token.token_type,
        expires_in=token.expires_in,
        scope=" ".join(token.scopes),
    )
    return success_response(request=request, data=data)


@router.get("/cookie-domain", response_model=SuccessEnvelope[CookieDomainResponse])
async def cookie_domain(request: Request) -> dict:
    # Lets a front end pick shared cookies or the redirect/exchange hand-off.
    cookie = cookie_domain_for(request)
    data = CookieDomainResponse(
        host=cookie.host,
        domain=cookie.domain,
        shared=cookie.shared,
        sso_mode=cookie.sso_mode,
        audience=cookie.audience,
    )
    return success_response(request=request, data=data)


@router.get("/session", response_model=SuccessEnvelope[PrincipalResponse])
async def current_session(
    request: Request,
    principal: Principal = Depends(require_access(SESSION_POLICY)),
) -> dict:
    data = PrincipalResponse(
        kind=principal.kind,
        subject_id=principal.subject_id,
        organization_id=principal.organization_id,
        roles=sorted(principal.roles),
        permissions=sorted(principal.permissions),
        session_id=principal.session_id,
        client_name=principal.client_name,
    )
    return success_response(request=request, data=data)
