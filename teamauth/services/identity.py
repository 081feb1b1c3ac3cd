from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.timeutil import as_utc
from teamauth.core.errors import (
    CannotRemovePrimaryError,
    ConflictError,
    InvalidCredentialsError,
    InvalidEmailError,
    InvalidKindError,
    NotFoundError,
    NotVerifiedError,
    TokenExpiredError,
)
from teamauth.domain.models import LinkedEmail, ProviderIdentity, User
from teamauth.persistence.repos import identity as identity_repo
from teamauth.persistence.repos import roles as roles_repo
from teamauth.services.authz import engine
from teamauth.services.authz.roles import SCOPE_INDIVIDUAL
from teamauth.services.auth.passwords import burn_verification, hash_password, needs_rehash, verify_password


logger = logging.getLogger(__name__)

EMAIL_KIND_PERSONAL = "personal"
EMAIL_KIND_WORK = "work"
EMAIL_KINDS = (EMAIL_KIND_PERSONAL, EMAIL_KIND_WORK)

USER_ACTIVE = "active"
USER_INACTIVE = "inactive"
USER_ARCHIVED = "archived"

VERIFICATION_TOKEN_PREFIX = "tmev_"
# Role granted to users created by a provider exchange.
PROVIDER_DEFAULT_ROLE = "candidate"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(address: str) -> str:
    # Addresses compare case-insensitively; storage and lookup share this form.
    normalized = (address or "").strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or not domain or "." not in domain or " " in normalized:
        raise InvalidEmailError(f"Invalid email address: {address!r}")
    return normalized


def hash_verification_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_verification_token() -> tuple[str, str]:
    raw_token = f"{VERIFICATION_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
    return raw_token, hash_verification_token(raw_token)


async def resolve_email(
    session: AsyncSession,
    identifier: str,
    *,
    require_verified: bool = False,
) -> tuple[LinkedEmail, User]:
    """Map any linked address to its owning user.

    Primary, personal and work addresses resolve alike. With
    ``require_verified`` an unverified match raises the same NotFoundError
    as a miss, so callers cannot tell the two apart.
    """
    try:
        normalized = normalize_email(identifier)
    except InvalidEmailError as exc:
        raise NotFoundError("User not found") from exc
    row = await identity_repo.get_email_with_owner(session, normalized)
    if row is None:
        raise NotFoundError("User not found")
    email, user = row
    if require_verified and not email.is_verified:
        raise NotFoundError("User not found")
    return email, user


async def resolve(session: AsyncSession, identifier: str, *, require_verified: bool = False) -> User:
    _email, user = await resolve_email(session, identifier, require_verified=require_verified)
    return user


async def authenticate_password(
    session: AsyncSession,
    *,
    email: str,
    password: str,
) -> tuple[User, LinkedEmail]:
    # Every failure path raises the same error after comparable work.
    try:
        linked, user = await resolve_email(session, email, require_verified=True)
    except NotFoundError as exc:
        burn_verification(password)
        raise InvalidCredentialsError() from exc
    if not user.password_hash:
        burn_verification(password)
        raise InvalidCredentialsError()
    if not verify_password(password, user.password_hash):
        raise InvalidCredentialsError()
    if user.status != USER_ACTIVE:
        raise InvalidCredentialsError()
    # Hashes from older argon2 parameters are upgraded on the next good login.
    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
    return user, linked


def _validate_kind(kind: str, organization_id: str | None) -> str:
    normalized = (kind or "").strip().lower()
    if normalized not in EMAIL_KINDS:
        raise InvalidKindError(f"Unsupported email kind: {kind}")
    if normalized == EMAIL_KIND_WORK and not organization_id:
        raise InvalidKindError("Work emails require an organization")
    if normalized == EMAIL_KIND_PERSONAL and organization_id:
        raise InvalidKindError("Personal emails cannot reference an organization")
    return normalized


@dataclass(frozen=True)
class LinkResult:
    email: LinkedEmail
    # Raw verification token, returned once for delivery; None when pre-verified.
    verification_token: str | None


async def link_email(
    session: AsyncSession,
    *,
    user_id: str,
    address: str,
    kind: str,
    organization_id: str | None = None,
    verified: bool = False,
    verification_ttl_hours: int = 24,
) -> LinkResult:
    """Attach an address to a user.

    ``verified=True`` is reserved for administrative bulk onboarding. A
    verified address linked to a user without a primary becomes the primary.
    """
    normalized = normalize_email(address)
    resolved_kind = _validate_kind(kind, organization_id)
    user = await identity_repo.get_user(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if organization_id is not None and await identity_repo.get_organization(session, organization_id) is None:
        raise NotFoundError("Organization not found")
    if await identity_repo.get_email_by_address(session, normalized) is not None:
        raise ConflictError("Email address is already linked to an account")

    now = _utc_now()
    email = LinkedEmail(
        user_id=user_id,
        address=normalized,
        kind=resolved_kind,
        organization_id=organization_id,
        is_primary=False,
        added_at=now,
    )
    raw_token: str | None = None
    if verified:
        email.verified_at = now
        if await identity_repo.get_primary_email(session, user_id) is None:
            email.is_primary = True
    else:
        raw_token, token_hash = generate_verification_token()
        email.verification_token_hash = token_hash
        email.verification_expires_at = now + timedelta(hours=verification_ttl_hours)
    session.add(email)
    try:
        await session.flush()
    except IntegrityError as exc:
        # A concurrent request linked the same address first.
        raise ConflictError("Email address is already linked to an account") from exc
    logger.info("email_linked user_id=%s email_id=%s kind=%s", user_id, email.id, resolved_kind)
    return LinkResult(email=email, verification_token=raw_token)


async def verify_email(session: AsyncSession, *, raw_token: str) -> LinkedEmail:
    # Verification tokens are single use and expire.
    email = await identity_repo.get_email_by_verification_hash(session, hash_verification_token(raw_token))
    if email is None:
        raise NotFoundError("Verification token not found")
    expires_at = as_utc(email.verification_expires_at)
    if expires_at is not None and expires_at <= _utc_now():
        raise TokenExpiredError("Verification token expired")
    return await _mark_verified(session, email)


async def mark_verified(session: AsyncSession, *, user_id: str, email_id: str) -> LinkedEmail:
    email = await identity_repo.get_user_email(session, user_id=user_id, email_id=email_id)
    if email is None:
        raise NotFoundError("Email not found")
    return await _mark_verified(session, email)


async def _mark_verified(session: AsyncSession, email: LinkedEmail) -> LinkedEmail:
    if email.verified_at is None:
        email.verified_at = _utc_now()
    email.verification_token_hash = None
    email.verification_expires_at = None
    if await identity_repo.get_primary_email(session, email.user_id) is None:
        email.is_primary = True
    await session.flush()
    logger.info("email_verified user_id=%s email_id=%s", email.user_id, email.id)
    return email


async def set_primary(session: AsyncSession, *, user_id: str, email_id: str) -> LinkedEmail:
    """Make ``email_id`` the user's primary address.

    Both flips happen inside the caller's transaction while the user row is
    locked, so concurrent calls serialize and nobody observes zero or two
    primaries. The caller commits.
    """
    user = await identity_repo.get_user_for_update(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    email = await identity_repo.get_user_email(session, user_id=user_id, email_id=email_id)
    if email is None:
        raise NotFoundError("Email not found")
    if not email.is_verified:
        raise NotVerifiedError()
    if email.is_primary:
        return email
    await session.execute(
        update(LinkedEmail)
        .where(LinkedEmail.user_id == user_id, LinkedEmail.is_primary.is_(True))
        .values(is_primary=False)
    )
    await session.execute(
        update(LinkedEmail)
        .where(LinkedEmail.id == email_id, LinkedEmail.user_id == user_id)
        .values(is_primary=True)
    )
    await session.flush()
    await session.refresh(email)
    logger.info("email_primary_changed user_id=%s email_id=%s", user_id, email_id)
    return email


async def unlink(session: AsyncSession, *, user_id: str, email_id: str) -> dict[str, Any]:
    email = await identity_repo.get_user_email(session, user_id=user_id, email_id=email_id)
    if email is None:
        raise NotFoundError("Email not found")
    if email.is_primary:
        raise CannotRemovePrimaryError()
    snapshot = {"id": email.id, "address": email.address, "kind": email.kind}
    await session.delete(email)
    await session.flush()
    logger.info("email_unlinked user_id=%s email_id=%s", user_id, email_id)
    return snapshot


async def list_emails(session: AsyncSession, *, user_id: str) -> list[LinkedEmail]:
    return await identity_repo.list_user_emails(session, user_id)


async def organization_memberships(session: AsyncSession, *, user_id: str) -> set[str]:
    # Organizations reachable through a verified work email or an organization-scoped grant.
    memberships = {
        email.organization_id
        for email in await identity_repo.list_user_emails(session, user_id)
        if email.organization_id and email.is_verified
    }
    for assignment in await roles_repo.list_user_assignments(session, user_id):
        if assignment.scope_entity_id:
            memberships.add(assignment.scope_entity_id)
    return memberships


@dataclass(frozen=True)
class EmailSpec:
    address: str
    kind: str = EMAIL_KIND_PERSONAL
    organization_id: str | None = None
    verified: bool = True


async def provision_user(
    session: AsyncSession,
    *,
    display_name: str,
    emails: list[EmailSpec],
    password: str | None = None,
    provenance: str | None = None,
) -> User:
    """Administrative onboarding: the first address becomes a verified primary."""
    if not emails:
        raise InvalidEmailError("At least one email is required")
    user = User(
        display_name=display_name.strip() or emails[0].address,
        status=USER_ACTIVE,
        password_hash=hash_password(password) if password else None,
        provenance=provenance,
        role_version=0,
    )
    session.add(user)
    await session.flush()
    for index, spec in enumerate(emails):
        # The primary must be verified regardless of what the request asked for.
        await link_email(
            session,
            user_id=user.id,
            address=spec.address,
            kind=spec.kind,
            organization_id=spec.organization_id,
            verified=spec.verified or index == 0,
        )
    logger.info("user_created user_id=%s emails=%s", user.id, len(emails))
    return user


async def update_profile(
    session: AsyncSession,
    *,
    user_id: str,
    display_name: str | None = None,
    password: str | None = None,
) -> User:
    user = await identity_repo.get_user(session, user_id)
    if user is None or user.status == USER_ARCHIVED:
        raise NotFoundError("User not found")
    if display_name is not None:
        user.display_name = display_name.strip()
    if password is not None:
        user.password_hash = hash_password(password)
    user.updated_at = _utc_now()
    await session.flush()
    return user


async def archive_user(session: AsyncSession, *, user_id: str) -> User:
    # Soft delete: the row and its history stay, every session dies.
    user = await identity_repo.get_user(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    if user.status != USER_ARCHIVED:
        now = _utc_now()
        user.status = USER_ARCHIVED
        user.archived_at = now
        user.sessions_revoked_at = now
        user.updated_at = now
        await session.flush()
        logger.info("user_archived user_id=%s", user_id)
    return user


async def ensure_provider_user(
    session: AsyncSession,
    *,
    issuer: str,
    subject: str,
    email: str,
    display_name: str | None,
) -> tuple[User, bool]:
    """Resolve or create the user behind a verified provider identity.

    Runs as one transaction and commits it. Unique constraints on the
    address and on (issuer, subject) decide races: the loser rolls back and
    resolves the winner's user, so a provider identity never yields two users.
    """
    normalized = normalize_email(email)
    try:
        user, created = await _bind_provider_identity(
            session, issuer=issuer, subject=subject, address=normalized, display_name=display_name
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        user = await _lookup_provider_user(session, issuer=issuer, subject=subject, address=normalized)
        if user is None:
            raise ConflictError("Provider identity could not be provisioned") from None
        created = False
        logger.info("provider_provisioning_race_resolved user_id=%s", user.id)
    return user, created


async def _lookup_provider_user(
    session: AsyncSession, *, issuer: str, subject: str, address: str
) -> User | None:
    identity = await identity_repo.get_provider_identity(session, issuer=issuer, subject=subject)
    if identity is not None:
        return await identity_repo.get_user(session, identity.user_id)
    row = await identity_repo.get_email_with_owner(session, address)
    if row is not None and row[0].is_verified:
        return row[1]
    return None


async def _bind_provider_identity(
    session: AsyncSession,
    *,
    issuer: str,
    subject: str,
    address: str,
    display_name: str | None,
) -> tuple[User, bool]:
    now = _utc_now()
    identity = await identity_repo.get_provider_identity(session, issuer=issuer, subject=subject)
    if identity is not None:
        user = await identity_repo.get_user(session, identity.user_id)
        if user is None:
            raise NotFoundError("User not found")
        identity.last_login_at = now
        identity.email = address
        return user, False

    row = await identity_repo.get_email_with_owner(session, address)
    if row is not None:
        linked, user = row
        if not linked.is_verified:
            # An unproven claim on the address must not capture the provider login.
            raise ConflictError("Email address is pending verification on another account")
        session.add(
            ProviderIdentity(issuer=issuer, subject=subject, user_id=user.id, email=address, last_login_at=now)
        )
        await session.flush()
        return user, False

    user = User(
        display_name=(display_name or "").strip() or address,
        status=USER_ACTIVE,
        role_version=0,
    )
    session.add(user)
    await session.flush()
    session.add(
        LinkedEmail(
            user_id=user.id,
            address=address,
            kind=EMAIL_KIND_PERSONAL,
            is_primary=True,
            verified_at=now,
            added_at=now,
        )
    )
    session.add(
        ProviderIdentity(issuer=issuer, subject=subject, user_id=user.id, email=address, last_login_at=now)
    )
    await session.flush()
    # Self-registered provider users start as candidates until an administrator grants more.
    await engine.assign(
        session,
        target_user_id=user.id,
        role_type=PROVIDER_DEFAULT_ROLE,
        scope=SCOPE_INDIVIDUAL,
        granted_by=None,
    )
    logger.info("user_created user_id=%s source=provider", user.id)
    return user, True
