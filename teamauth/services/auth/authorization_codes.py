from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
import re
import secrets

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.errors import (
    InvalidAuthorizationRequestError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRedirectError,
)
from teamauth.core.timeutil import as_utc
from teamauth.domain.models import AuthorizationCode, RefreshSession, ServiceCredential
from teamauth.services.auth.service_credentials import get_credential, secrets_match


logger = logging.getLogger(__name__)

AUTHORIZATION_CODE_PREFIX = "tmac_"
PKCE_METHOD_S256 = "S256"
# Base64url alphabet, as produced by an S256 transform of a 43-128 character verifier.
_CHALLENGE_PATTERN = re.compile(r"[A-Za-z0-9_-]{43,128}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_authorization_code(raw_code: str) -> str:
    return hashlib.sha256(raw_code.encode("utf-8")).hexdigest()


def pkce_challenge(verifier: str) -> str:
    # RFC 7636 S256: unpadded base64url of the verifier's SHA-256.
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class RedeemedCode:
    code: AuthorizationCode
    client: ServiceCredential


async def registered_client(session: AsyncSession, client_id: str, redirect_uri: str) -> ServiceCredential:
    """Look up an active client and check the redirect against its allow-list.

    Matching is exact; a mismatch is reported to the caller and never
    redirected to.
    """
    credential = await get_credential(session, client_id)
    if credential is None or not credential.is_active or credential.revoked_at is not None:
        raise InvalidClientError("Unknown client")
    if redirect_uri not in (credential.redirect_uris or []):
        raise InvalidRedirectError(details={"redirect_uri": redirect_uri})
    return credential


async def issue_code(
    session: AsyncSession,
    *,
    client: ServiceCredential,
    user_id: str,
    redirect_uri: str,
    organization_id: str | None,
    code_challenge: str | None,
    code_challenge_method: str | None,
    ttl_s: int,
) -> str:
    """Mint a single-use code for ``user_id``; returns the raw code once."""
    if code_challenge is not None:
        if (code_challenge_method or PKCE_METHOD_S256) != PKCE_METHOD_S256:
            raise InvalidAuthorizationRequestError("Only the S256 code challenge method is supported")
        if not _CHALLENGE_PATTERN.fullmatch(code_challenge):
            raise InvalidAuthorizationRequestError("Malformed code challenge")
    elif code_challenge_method is not None:
        raise InvalidAuthorizationRequestError("code_challenge_method without code_challenge")
    now = _utc_now()
    raw_code = f"{AUTHORIZATION_CODE_PREFIX}{secrets.token_urlsafe(32)}"
    session.add(
        AuthorizationCode(
            code_hash=hash_authorization_code(raw_code),
            client_id=client.client_id,
            user_id=user_id,
            organization_id=organization_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_s),
        )
    )
    await session.flush()
    return raw_code


async def _revoke_minted_session(session: AsyncSession, code: AuthorizationCode, now: datetime) -> None:
    if code.session_id is None:
        return
    await session.execute(
        update(RefreshSession)
        .where(RefreshSession.family_id == code.session_id, RefreshSession.revoked_at.is_(None))
        .values(revoked_at=now)
    )


async def redeem_code(
    session: AsyncSession,
    *,
    raw_code: str,
    client_id: str,
    redirect_uri: str,
    client_secret: str | None = None,
    code_verifier: str | None = None,
) -> RedeemedCode:
    """Spend a code and return it with its client.

    The code is burned and committed before its bindings are checked, so a
    wrong verifier or redirect still consumes it. Presenting a spent code
    revokes the session it produced; that revocation is committed before the
    error propagates.
    """
    now = _utc_now()
    result = await session.execute(
        select(AuthorizationCode).where(AuthorizationCode.code_hash == hash_authorization_code(raw_code or ""))
    )
    code = result.scalar_one_or_none()
    if code is None:
        raise InvalidGrantError()
    if code.consumed_at is not None:
        await _revoke_minted_session(session, code, now)
        await session.commit()
        logger.warning("authorization_code_reuse_detected client_id=%s user_id=%s", code.client_id, code.user_id)
        raise InvalidGrantError("Authorization code already used")
    if as_utc(code.expires_at) <= now:
        raise InvalidGrantError("Authorization code expired")
    burned = await session.execute(
        update(AuthorizationCode)
        .where(AuthorizationCode.id == code.id, AuthorizationCode.consumed_at.is_(None))
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    if not burned.rowcount:
        raise InvalidGrantError("Authorization code already used")
    code.consumed_at = now
    await session.commit()

    if code.client_id != client_id:
        raise InvalidGrantError("Authorization code was issued to another client")
    client = await get_credential(session, client_id)
    if client is None or not client.is_active or client.revoked_at is not None:
        raise InvalidClientError()
    if client_secret is not None and not secrets_match(client_secret, client.secret_hash):
        raise InvalidClientError()
    if code.redirect_uri != redirect_uri:
        raise InvalidGrantError("Redirect URI does not match the authorization request")
    if code.code_challenge is not None:
        if not code_verifier or not hmac.compare_digest(pkce_challenge(code_verifier), code.code_challenge):
            raise InvalidGrantError("Code verifier does not match the challenge")
    elif client_secret is None:
        # Without PKCE the client must prove itself with its secret.
        raise InvalidClientError()
    return RedeemedCode(code=code, client=client)


async def prune_authorization_codes(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Spent codes stay until expiry plus a day so replays still find their session.
    cutoff = (now or _utc_now()) - timedelta(days=1)
    result = await session.execute(
        delete(AuthorizationCode)
        .where(AuthorizationCode.expires_at <= cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
