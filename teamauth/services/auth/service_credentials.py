from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import re
import secrets
from typing import Iterable
from urllib.parse import urlsplit
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.domain.models import ServiceCredential


CLIENT_ID_PREFIX = "tmci_"
CLIENT_SECRET_PREFIX = "tmcs_"
WILDCARD_READ_SCOPE = "read:*"
# Only read scopes are issuable; write access is never delegated to services.
_SCOPE_PATTERN = re.compile(r"^read:(\*|[a-z][a-z0-9_]*)$")
# Compared against when the client id is unknown so both paths do the same work.
_UNKNOWN_CLIENT_HASH = hashlib.sha256(b"teamauth-unknown-client").hexdigest()


def hash_client_secret(raw_secret: str) -> str:
    # Use SHA-256 for deterministic, non-reversible secret storage.
    return hashlib.sha256(raw_secret.encode("utf-8")).hexdigest()


def secrets_match(raw_secret: str, stored_hash: str | None) -> bool:
    # Digests have a fixed length, so the comparison time ignores the input length.
    candidate = hash_client_secret(raw_secret or "")
    return hmac.compare_digest(candidate, stored_hash or _UNKNOWN_CLIENT_HASH) and stored_hash is not None


def generate_client_credentials() -> tuple[str, str, str, str]:
    # Returns (client_id, raw_secret, secret_prefix, secret_hash); the raw secret is shown once.
    client_id = f"{CLIENT_ID_PREFIX}{uuid4().hex}"
    raw_secret = f"{CLIENT_SECRET_PREFIX}{secrets.token_urlsafe(32)}"
    return client_id, raw_secret, raw_secret[:12], hash_client_secret(raw_secret)


def is_valid_redirect_uri(uri: str) -> bool:
    # Absolute https URIs without a fragment; plain http only for local development hosts.
    parts = urlsplit(uri)
    if not parts.netloc or parts.fragment:
        return False
    if parts.scheme == "https":
        return True
    return parts.scheme == "http" and parts.hostname in {"localhost", "127.0.0.1"}


def is_valid_scope(scope: str) -> bool:
    return bool(_SCOPE_PATTERN.match(scope))


def parse_scopes(raw: str | Iterable[str] | None) -> list[str]:
    # Accept the OAuth space-delimited form or a list; keep first-seen order.
    if raw is None:
        return []
    items = raw.split() if isinstance(raw, str) else [str(item).strip() for item in raw]
    ordered: list[str] = []
    for item in items:
        if item and item not in ordered:
            ordered.append(item)
    return ordered


def scope_allows(granted: Iterable[str], required: str) -> bool:
    # read:* covers every read scope; nothing covers a non-read scope.
    granted_set = set(granted)
    if required in granted_set:
        return True
    verb, _, _resource = required.partition(":")
    return verb == "read" and WILDCARD_READ_SCOPE in granted_set


async def get_credential(session: AsyncSession, client_id: str) -> ServiceCredential | None:
    result = await session.execute(select(ServiceCredential).where(ServiceCredential.client_id == client_id))
    return result.scalar_one_or_none()


async def create_service_credential(
    session: AsyncSession,
    *,
    name: str,
    scopes: Iterable[str],
    redirect_uris: Iterable[str] = (),
) -> tuple[ServiceCredential, str]:
    allowed = parse_scopes(list(scopes))
    invalid = [scope for scope in allowed if not is_valid_scope(scope)]
    if invalid:
        raise ValueError(f"Unsupported scopes: {', '.join(invalid)}")
    registered = list(dict.fromkeys(uri.strip() for uri in redirect_uris if uri.strip()))
    rejected = [uri for uri in registered if not is_valid_redirect_uri(uri)]
    if rejected:
        raise ValueError(f"Unsupported redirect URIs: {', '.join(rejected)}")
    client_id, raw_secret, secret_prefix, secret_hash = generate_client_credentials()
    credential = ServiceCredential(
        client_id=client_id,
        name=name,
        secret_prefix=secret_prefix,
        secret_hash=secret_hash,
        allowed_scopes=allowed,
        redirect_uris=registered,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    session.add(credential)
    await session.flush()
    return credential, raw_secret
