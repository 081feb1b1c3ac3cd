from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import time
from typing import Any

import httpx
import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.config import Settings
from teamauth.core.errors import (
    AudienceMismatchError,
    InvalidCredentialsError,
    ProviderUnavailableError,
    TokenExpiredError,
    TokenMalformedError,
)
from teamauth.domain.models import User
from teamauth.persistence.repos import identity as identity_repo
from teamauth.services import identity
from teamauth.services.auth.tokens import SessionCredential, TokenService


logger = logging.getLogger(__name__)

_ALLOWED_ALGS = {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"}


@dataclass(frozen=True)
class ProviderClaims:
    issuer: str
    subject: str
    email: str
    name: str | None
    raw: dict[str, Any]


async def _fetch_jwks(jwks_url: str, timeout_s: float) -> dict[str, Any]:
    # Fetch JWKS from the provider for signature verification.
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        response = await client.get(jwks_url)
    response.raise_for_status()
    return response.json()


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any] | None:
    # Select the appropriate JWK based on kid header.
    keys = jwks.get("keys") or []
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
        return None
    if len(keys) == 1:
        return keys[0]
    return None


def _jwk_to_key(jwk: dict[str, Any], alg: str) -> Any:
    # Convert a JWK payload into a cryptography key for PyJWT.
    payload = json.dumps(jwk)
    if alg.startswith("RS"):
        return jwt.algorithms.RSAAlgorithm.from_jwk(payload)
    if alg.startswith("ES"):
        return jwt.algorithms.ECAlgorithm.from_jwk(payload)
    raise TokenMalformedError("Unsupported assertion algorithm")


def extract_claims(claims: dict[str, Any]) -> ProviderClaims:
    # Only provider-verified addresses may identify or create a user.
    subject = claims.get("sub")
    email = claims.get("email")
    if not subject or not email:
        raise TokenMalformedError("Assertion missing subject or email")
    if claims.get("email_verified") not in (True, "true"):
        raise TokenMalformedError("Assertion email is not verified")
    name = claims.get("name")
    if not name:
        given = claims.get("given_name")
        family = claims.get("family_name")
        if given or family:
            name = " ".join([part for part in [given, family] if part])
    return ProviderClaims(issuer=str(claims["iss"]), subject=str(subject), email=str(email), name=name, raw=claims)


class ProviderVerifier:
    """Validates assertions from the single configured identity provider."""

    def __init__(self, settings: Settings) -> None:
        self.issuer = settings.provider_issuer
        self.audience = settings.provider_audience
        self.jwks_url = settings.provider_jwks_url
        self.clock_skew_s = settings.provider_clock_skew_s
        self._jwks_cache_s = settings.provider_jwks_cache_s
        self._timeout_s = settings.ext_call_timeout_ms / 1000
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0

    async def _get_jwks(self, *, force: bool = False) -> dict[str, Any]:
        fresh = self._jwks is not None and time.monotonic() - self._jwks_fetched_at < self._jwks_cache_s
        if fresh and not force:
            return self._jwks
        try:
            jwks = await _fetch_jwks(self.jwks_url, self._timeout_s)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("provider_jwks_fetch_failed url=%s", self.jwks_url, exc_info=exc)
            raise ProviderUnavailableError() from exc
        self._jwks = jwks
        self._jwks_fetched_at = time.monotonic()
        return jwks

    async def _key_for(self, kid: str | None, alg: str) -> Any:
        jwk = _select_jwk(await self._get_jwks(), kid)
        if jwk is None:
            # The provider may have rotated keys since the last fetch.
            jwk = _select_jwk(await self._get_jwks(force=True), kid)
        if jwk is None:
            raise TokenMalformedError("No matching provider key")
        return _jwk_to_key(jwk, alg)

    async def validate(self, assertion: str) -> ProviderClaims:
        # Validate the assertion signature and core claims.
        try:
            header = jwt.get_unverified_header(assertion)
        except jwt.InvalidTokenError as exc:
            raise TokenMalformedError() from exc
        alg = header.get("alg")
        if not alg or alg not in _ALLOWED_ALGS:
            raise TokenMalformedError("Unsupported assertion algorithm")
        key = await self._key_for(header.get("kid"), alg)
        try:
            claims = jwt.decode(
                assertion,
                key,
                algorithms=[alg],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.clock_skew_s,
                options={"require": ["exp", "iss", "aud", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except jwt.InvalidAudienceError as exc:
            raise AudienceMismatchError() from exc
        except jwt.InvalidTokenError as exc:
            raise TokenMalformedError() from exc
        return extract_claims(claims)


@dataclass(frozen=True)
class ExchangeResult:
    credential: SessionCredential
    user: User
    created: bool


async def exchange_provider_token(
    session: AsyncSession,
    *,
    assertion: str,
    verifier: ProviderVerifier,
    token_service: TokenService,
    audience: str,
    client_name: str | None = None,
) -> ExchangeResult:
    """Turn a provider assertion into a session for the matching user.

    This is the only path that creates a user from an external signal.
    Provisioning commits on its own; the session rows are left for the
    caller to commit.
    """
    claims = await verifier.validate(assertion)
    user, created = await identity.ensure_provider_user(
        session,
        issuer=claims.issuer,
        subject=claims.subject,
        email=claims.email,
        display_name=claims.name,
    )
    if user.status != identity.USER_ACTIVE:
        raise InvalidCredentialsError()
    # Work addresses bind the session to their organization.
    linked = await identity_repo.get_email_by_address(session, identity.normalize_email(claims.email))
    organization_id = None
    if linked is not None and linked.user_id == user.id and linked.kind == identity.EMAIL_KIND_WORK:
        organization_id = linked.organization_id
    credential = await token_service.issue_session(
        session,
        user,
        audience=audience,
        organization_id=organization_id,
        client_name=client_name,
    )
    logger.info("provider_exchange user_id=%s created=%s", user.id, created)
    return ExchangeResult(credential=credential, user=user, created=created)
