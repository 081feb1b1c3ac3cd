from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Any
from uuid import uuid4

import jwt
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.config import Settings
from teamauth.core.errors import (
    AudienceMismatchError,
    ForbiddenError,
    InvalidClientError,
    ScopeNotGrantedError,
    TokenExpiredError,
    TokenMalformedError,
)
from teamauth.core.timeutil import as_utc
from teamauth.domain.models import RefreshSession, User
from teamauth.services.authz import engine
from teamauth.services.auth.service_credentials import (
    get_credential,
    is_valid_scope,
    parse_scopes,
    scope_allows,
    secrets_match,
)


logger = logging.getLogger(__name__)

TOKEN_TYPE_SESSION = "session"
TOKEN_TYPE_SERVICE = "service"
REFRESH_TOKEN_PREFIX = "tmrt_"

_SESSION_REQUIRED_CLAIMS = ["exp", "iat", "sub", "aud", "iss", "typ", "jti"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_refresh_token() -> tuple[str, str, str, str]:
    # Embed the row id so operators can trace a token without storing it.
    token_id = uuid4().hex
    raw_token = f"{REFRESH_TOKEN_PREFIX}{token_id}_{secrets.token_urlsafe(32)}"
    return token_id, raw_token, raw_token[:12], hash_refresh_token(raw_token)


@dataclass(frozen=True)
class SessionCredential:
    access_token: str
    refresh_token: str
    expires_in: int
    issued_at: datetime
    expires_at: datetime
    user_id: str
    organization_id: str | None
    audience: str
    session_id: str
    roles: tuple[dict[str, Any], ...] = ()
    token_type: str = "Bearer"


@dataclass(frozen=True)
class ServiceToken:
    access_token: str
    expires_in: int
    scopes: tuple[str, ...]
    client_id: str
    audience: str
    token_type: str = "Bearer"


@dataclass(frozen=True)
class TokenClaims:
    kind: str
    subject: str
    audience: str
    issued_at: datetime
    expires_at: datetime
    token_id: str
    organization_id: str | None = None
    roles: tuple[str, ...] = ()
    scopes: tuple[str, ...] = ()
    session_id: str | None = None
    client_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_service(self) -> bool:
        return self.kind == TOKEN_TYPE_SERVICE


def _role_snapshot(assignments: list[Any]) -> tuple[dict[str, Any], ...]:
    return tuple(
        {"role": row.role_type, "scope": row.scope, "org": row.scope_entity_id}
        for row in assignments
    )


class TokenService:
    """Mints and validates this system's access credentials.

    Session and service tokens are both HS256 JWTs, told apart by the ``typ``
    claim and by carrying ``roles`` or ``scope`` but never both. Validation is
    local and never touches the database.
    """

    def __init__(self, settings: Settings) -> None:
        self._secret = settings.jwt_secret
        self._algorithm = settings.jwt_algorithm
        self._issuer = settings.jwt_issuer
        self.access_ttl_s = settings.access_token_ttl_s
        self.service_ttl_s = settings.service_token_ttl_s
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self.refresh_idle_timeout = timedelta(hours=settings.refresh_idle_timeout_hours)

    def _encode(self, claims: dict[str, Any]) -> str:
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    def _mint_access(
        self,
        *,
        user_id: str,
        organization_id: str | None,
        roles: tuple[dict[str, Any], ...],
        audience: str,
        session_id: str,
        client_name: str | None,
        now: datetime,
    ) -> tuple[str, datetime]:
        expires_at = now + timedelta(seconds=self.access_ttl_s)
        claims = {
            "iss": self._issuer,
            "sub": user_id,
            "aud": audience,
            "typ": TOKEN_TYPE_SESSION,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid4().hex,
            "sid": session_id,
            "org": organization_id,
            "roles": list(roles),
        }
        if client_name:
            claims["client"] = client_name
        return self._encode(claims), expires_at

    async def issue_session(
        self,
        session: AsyncSession,
        user: User,
        *,
        audience: str,
        organization_id: str | None = None,
        client_name: str | None = None,
    ) -> SessionCredential:
        """Start a login: new refresh family plus an access token.

        The access token carries the roles effective at issuance in the
        bound organization. The caller commits.
        """
        if user.status != "active":
            raise ForbiddenError("User is not active")
        now = _utc_now()
        token_id, raw_refresh, token_prefix, token_hash = generate_refresh_token()
        refresh_row = RefreshSession(
            id=token_id,
            family_id=uuid4().hex,
            user_id=user.id,
            organization_id=organization_id,
            audience=audience,
            client_name=client_name,
            token_prefix=token_prefix,
            token_hash=token_hash,
            created_at=now,
            last_used_at=now,
            expires_at=now + self.refresh_ttl,
        )
        session.add(refresh_row)
        await session.flush()
        return await self._credential_for(
            session,
            user_id=user.id,
            organization_id=organization_id,
            audience=audience,
            client_name=client_name,
            session_id=refresh_row.family_id,
            raw_refresh=raw_refresh,
            now=now,
        )

    async def _credential_for(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        organization_id: str | None,
        audience: str,
        client_name: str | None,
        session_id: str,
        raw_refresh: str,
        now: datetime,
    ) -> SessionCredential:
        assignments = await engine.effective_roles(session, user_id, organization_id, now=now)
        roles = _role_snapshot(assignments)
        access_token, expires_at = self._mint_access(
            user_id=user_id,
            organization_id=organization_id,
            roles=roles,
            audience=audience,
            session_id=session_id,
            client_name=client_name,
            now=now,
        )
        return SessionCredential(
            access_token=access_token,
            refresh_token=raw_refresh,
            expires_in=self.access_ttl_s,
            issued_at=now,
            expires_at=expires_at,
            user_id=user_id,
            organization_id=organization_id,
            audience=audience,
            session_id=session_id,
            roles=roles,
        )

    async def refresh(self, session: AsyncSession, raw_refresh_token: str, *, audience: str) -> SessionCredential:
        """Rotate a refresh token and mint a fresh access token.

        Roles are re-read, never copied from the previous token. Presenting a
        token that was already rotated revokes its whole family; that
        revocation is committed before the error propagates.
        """
        now = _utc_now()
        result = await session.execute(
            select(RefreshSession).where(RefreshSession.token_hash == hash_refresh_token(raw_refresh_token or ""))
        )
        current = result.scalar_one_or_none()
        if current is None:
            raise TokenMalformedError("Invalid refresh token")
        if current.revoked_at is not None:
            raise TokenExpiredError("Refresh token revoked")
        if current.rotated_at is not None:
            await self._revoke_family(session, current.family_id, now)
            await session.commit()
            logger.warning(
                "refresh_token_reuse_detected user_id=%s family_id=%s", current.user_id, current.family_id
            )
            raise TokenExpiredError("Refresh token reuse detected")
        if current.audience != audience:
            raise AudienceMismatchError()
        expires_at = as_utc(current.expires_at)
        last_used_at = as_utc(current.last_used_at)
        if expires_at <= now or last_used_at + self.refresh_idle_timeout <= now:
            raise TokenExpiredError("Refresh token expired")
        user = await session.get(User, current.user_id)
        if user is None or user.status != "active":
            raise ForbiddenError("User is not active")

        current.rotated_at = now
        token_id, raw_refresh, token_prefix, token_hash = generate_refresh_token()
        successor = RefreshSession(
            id=token_id,
            family_id=current.family_id,
            user_id=current.user_id,
            organization_id=current.organization_id,
            audience=current.audience,
            client_name=current.client_name,
            token_prefix=token_prefix,
            token_hash=token_hash,
            created_at=now,
            last_used_at=now,
            # The family keeps its absolute expiry across rotations.
            expires_at=expires_at,
        )
        session.add(successor)
        await session.flush()
        return await self._credential_for(
            session,
            user_id=current.user_id,
            organization_id=current.organization_id,
            audience=current.audience,
            client_name=current.client_name,
            session_id=current.family_id,
            raw_refresh=raw_refresh,
            now=now,
        )

    async def _revoke_family(self, session: AsyncSession, family_id: str, now: datetime) -> None:
        await session.execute(
            update(RefreshSession)
            .where(RefreshSession.family_id == family_id, RefreshSession.revoked_at.is_(None))
            .values(revoked_at=now)
        )

    async def revoke_session(self, session: AsyncSession, raw_refresh_token: str) -> str | None:
        """Logout: kill the family behind this token.

        Returns the owner only when the presented token was still live.
        Rotated, revoked, expired and unknown tokens yield None, so a stale
        token can never stand in for the user on a global logout.
        """
        result = await session.execute(
            select(RefreshSession).where(RefreshSession.token_hash == hash_refresh_token(raw_refresh_token or ""))
        )
        current = result.scalar_one_or_none()
        if current is None:
            return None
        now = _utc_now()
        live = current.revoked_at is None and current.rotated_at is None and as_utc(current.expires_at) > now
        await self._revoke_family(session, current.family_id, now)
        return current.user_id if live else None

    async def revoke_all(self, session: AsyncSession, user_id: str) -> None:
        # Global logout: refresh families die now, access tokens at the guard.
        now = _utc_now()
        await session.execute(
            update(RefreshSession)
            .where(RefreshSession.user_id == user_id, RefreshSession.revoked_at.is_(None))
            .values(revoked_at=now)
        )
        await session.execute(update(User).where(User.id == user_id).values(sessions_revoked_at=now))

    async def issue_service_token(
        self,
        session: AsyncSession,
        *,
        client_id: str,
        client_secret: str,
        requested_scopes: str | list[str] | None,
        audience: str,
    ) -> ServiceToken:
        """Client-credentials grant. Scopes are granted all-or-nothing.

        An empty request receives the credential's whole allow-list.
        """
        credential = await get_credential(session, client_id or "")
        stored_hash = credential.secret_hash if credential is not None else None
        if not secrets_match(client_secret, stored_hash):
            raise InvalidClientError()
        if credential is None or not credential.is_active or credential.revoked_at is not None:
            raise InvalidClientError()

        allowed = list(credential.allowed_scopes or [])
        requested = parse_scopes(requested_scopes)
        if not requested:
            requested = allowed
        denied = [scope for scope in requested if not is_valid_scope(scope) or not scope_allows(allowed, scope)]
        if denied:
            raise ScopeNotGrantedError(details={"scopes": denied})

        now = _utc_now()
        credential.last_used_at = now
        expires_at = now + timedelta(seconds=self.service_ttl_s)
        claims = {
            "iss": self._issuer,
            "sub": credential.client_id,
            "aud": audience,
            "typ": TOKEN_TYPE_SERVICE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid4().hex,
            "scope": " ".join(requested),
            "client": credential.name,
        }
        await session.flush()
        return ServiceToken(
            access_token=self._encode(claims),
            expires_in=self.service_ttl_s,
            scopes=tuple(requested),
            client_id=credential.client_id,
            audience=audience,
        )

    def validate(self, token: str, *, audience: str) -> TokenClaims:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=audience,
                issuer=self._issuer,
                options={"require": _SESSION_REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except jwt.InvalidAudienceError as exc:
            raise AudienceMismatchError() from exc
        except jwt.InvalidTokenError as exc:
            raise TokenMalformedError() from exc

        kind = claims.get("typ")
        base = {
            "kind": kind,
            "subject": str(claims["sub"]),
            "audience": audience,
            "issued_at": datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc),
            "expires_at": datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
            "token_id": str(claims["jti"]),
            "client_name": claims.get("client"),
            "raw": claims,
        }
        if kind == TOKEN_TYPE_SESSION:
            roles = claims.get("roles")
            if not isinstance(roles, list) or "scope" in claims:
                raise TokenMalformedError()
            return TokenClaims(
                **base,
                organization_id=claims.get("org"),
                roles=tuple(str(item.get("role")) for item in roles if isinstance(item, dict)),
                session_id=claims.get("sid"),
            )
        if kind == TOKEN_TYPE_SERVICE:
            scope = claims.get("scope")
            if not isinstance(scope, str) or "roles" in claims:
                raise TokenMalformedError()
            return TokenClaims(**base, scopes=tuple(parse_scopes(scope)))
        raise TokenMalformedError()


async def prune_refresh_sessions(session: AsyncSession, *, now: datetime | None = None) -> int:
    # A family shares one absolute expiry, so whole families go at once and reuse detection survives until then.
    cutoff = now or _utc_now()
    result = await session.execute(
        delete(RefreshSession)
        .where(RefreshSession.expires_at <= cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
