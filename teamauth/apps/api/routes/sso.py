from __future__ import annotations

from typing import Literal
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.apps.api.deps import (
    extract_credential,
    get_app_settings,
    get_db,
    get_guard,
    get_token_service,
    request_audience,
)
from teamauth.apps.api.openapi import TOKEN_ERROR_RESPONSES
from teamauth.apps.api.response import ApiModel, SuccessEnvelope, success_response
from teamauth.apps.api.routes.auth import (
    SESSION_POLICY,
    SessionResponse,
    credential_role_label,
    session_payload,
    set_session_cookies,
)
from teamauth.core.errors import TeamAuthError, TokenError, UnauthenticatedError
from teamauth.persistence.repos import identity as identity_repo
from teamauth.services.audit import get_request_context, record_event
from teamauth.services.auth import authorization_codes
from teamauth.services.guard import Principal


router = APIRouter(prefix="/sso", tags=["sso"], responses=TOKEN_ERROR_RESPONSES)


class AuthorizationCodeRequest(ApiModel):
    grant_type: Literal["authorization_code"]
    code: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)
    # Confidential clients send their secret; public clients prove the PKCE verifier instead.
    client_secret: str | None = None
    code_verifier: str | None = Field(default=None, max_length=128)


def _with_query(url: str, params: dict[str, str | None]) -> str:
    # Extend the registered URI's own query string instead of replacing it.
    parts = urlsplit(url)
    extra = urlencode({key: value for key, value in params.items() if value is not None})
    query = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


async def _signed_in(request: Request, db: AsyncSession) -> Principal | None:
    try:
        return await get_guard(request).authorize(
            db, extract_credential(request), SESSION_POLICY, audience=request_audience(request), method="GET"
        )
    except (UnauthenticatedError, TokenError):
        return None


@router.get("/authorize", response_class=RedirectResponse, status_code=302)
async def authorize(
    request: Request,
    client_id: str = Query(min_length=1),
    redirect_uri: str = Query(min_length=1),
    state: str | None = Query(default=None, max_length=512),
    code_challenge: str | None = Query(default=None),
    code_challenge_method: str | None = Query(default=None),
    prompt: Literal["none", "login"] | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> RedirectResponse:
    """Start the hand-off to a registered client application.

    An unregistered client or redirect URI is answered with an error body and
    never redirected to. A signed-in user is sent back with a single-use code;
    anyone else goes to the login page, or with ``prompt=none`` straight back
    with ``login_required``.
    """
    settings = get_app_settings(request)
    client = await authorization_codes.registered_client(db, client_id, redirect_uri)
    principal = None if prompt == "login" else await _signed_in(request, db)
    if principal is None:
        if prompt == "none":
            target = _with_query(
                redirect_uri,
                {"error": "login_required", "error_description": "User is not signed in", "state": state},
            )
            return RedirectResponse(target, status_code=302)
        return_url = request.url.path + (f"?{request.url.query}" if request.url.query else "")
        if prompt == "login":
            # Drop the prompt so the round trip back from the login page does not loop.
            query = [(key, value) for key, value in request.query_params.multi_items() if key != "prompt"]
            return_url = request.url.path + (f"?{urlencode(query)}" if query else "")
        return RedirectResponse(_with_query(settings.sso_login_url, {"returnUrl": return_url}), status_code=302)

    raw_code = await authorization_codes.issue_code(
        db,
        client=client,
        user_id=principal.subject_id,
        redirect_uri=redirect_uri,
        organization_id=principal.organization_id,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        ttl_s=settings.sso_code_ttl_s,
    )
    await record_event(
        session=db,
        action="sso_code_issued",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        entity_type="service_credential",
        entity_id=client.client_id,
        client_name=client.name,
        payload={"redirect_uri": redirect_uri, "pkce": code_challenge is not None},
        **get_request_context(request),
    )
    await db.commit()
    return RedirectResponse(_with_query(redirect_uri, {"code": raw_code, "state": state}), status_code=302)


@router.post("/token", response_model=SuccessEnvelope[SessionResponse])
async def exchange_code(
    request: Request,
    response: Response,
    payload: AuthorizationCodeRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Codes are spent on first presentation; a replay also revokes the session it produced.
    request_ctx = get_request_context(request)
    try:
        redeemed = await authorization_codes.redeem_code(
            db,
            raw_code=payload.code,
            client_id=payload.client_id,
            redirect_uri=payload.redirect_uri,
            client_secret=payload.client_secret,
            code_verifier=payload.code_verifier,
        )
        user = await identity_repo.get_user(db, redeemed.code.user_id)
        credential = await get_token_service(request).issue_session(
            db,
            user,
            audience=request_audience(request),
            organization_id=redeemed.code.organization_id,
            client_name=redeemed.client.name,
        )
        redeemed.code.session_id = credential.session_id
        db.add(redeemed.code)
    except TeamAuthError as exc:
        await db.rollback()
        await record_event(
            session=None,
            action="sso_token_failure",
            outcome="failure",
            actor_user_id=None,
            entity_type="service_credential",
            entity_id=payload.client_id,
            payload={"code": exc.code},
            **request_ctx,
        )
        raise
    await record_event(
        session=db,
        action="sso_token_issued",
        actor_user_id=user.id,
        actor_role=credential_role_label(credential),
        entity_type="session",
        entity_id=credential.session_id,
        client_name=redeemed.client.name,
        payload={"client_id": redeemed.client.client_id, "organization_id": credential.organization_id},
        **request_ctx,
    )
    await db.commit()
    set_session_cookies(request, response, credential)
    return success_response(request=request, data=await session_payload(db, credential, user))
