from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB in Postgres, plain JSON elsewhere (SQLite for local runs).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
MonotonicId = BigInteger().with_variant(Integer(), "sqlite")


def _new_id() -> str:
    return uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    # Tenant lifecycle: active|suspended|archived.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Free-form contact metadata (phone, address, billing contact).
    contact_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    display_name: Mapped[str] = mapped_column(String)
    # Users are archived, never deleted: active|inactive|archived.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False, index=True)
    # Null for users that only authenticate through the identity provider.
    password_hash: Mapped[str | None] = mapped_column(String, nullable=True)
    # Bumped on every role change; part of the permission cache key.
    role_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Access tokens issued before this instant are rejected (global logout).
    sessions_revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Optional origin tag, e.g. "legacy_import"; not consulted at runtime.
    provenance: Mapped[str | None] = mapped_column(String, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class LinkedEmail(Base):
    __tablename__ = "linked_emails"
    __table_args__ = (
        # At most one primary per user; the service guarantees at least one.
        Index(
            "uq_linked_emails_one_primary",
            "user_id",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # Stored lower-cased; the unique index makes resolution a single indexed lookup.
    address: Mapped[str] = mapped_column(String, unique=True, index=True)
    # personal|work
    kind: Mapped[str] = mapped_column(String)
    # Set only for work emails.
    organization_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("organizations.id"), nullable=True, index=True
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Hashed single-use verification token for unverified addresses.
    verification_token_hash: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    verification_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None


class RoleAssignment(Base):
    __tablename__ = "role_assignments"
    __table_args__ = (
        UniqueConstraint("user_id", "role_type", "scope_entity_id", name="uq_role_assignments_grant"),
        Index("ix_role_assignments_user_scope", "user_id", "scope_entity_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    role_type: Mapped[str] = mapped_column(String)
    # global|organization|individual
    scope: Mapped[str] = mapped_column(String)
    # Organization id for organization-scoped roles, null otherwise.
    scope_entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Past expiry makes the grant inert until the retention sweep deletes it.
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    # Null for system grants (bootstrap scripts, migrations).
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class ServiceCredential(Base):
    __tablename__ = "service_credentials"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    client_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    # Keep a short prefix of the secret for operator tracing.
    secret_prefix: Mapped[str] = mapped_column(String)
    secret_hash: Mapped[str] = mapped_column(String)
    allowed_scopes: Mapped[list[str]] = mapped_column(JsonType, default=list)
    # Exact-match allow-list for the authorization-code hand-off; empty disables it.
    redirect_uris: Mapped[list[str]] = mapped_column(JsonType, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class RefreshSession(Base):
    __tablename__ = "refresh_sessions"

    # Persist hashed refresh tokens; a family shares one login.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    family_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    audience: Mapped[str] = mapped_column(String)
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    token_prefix: Mapped[str] = mapped_column(String)
    token_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Set once the token has been exchanged for its successor.
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuthorizationCode(Base):
    __tablename__ = "authorization_codes"

    # Single-use hand-off from a logged-in user to a registered client; only the hash is kept.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    code_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    client_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    redirect_uri: Mapped[str] = mapped_column(String)
    # PKCE S256 challenge; null for confidential clients that authenticate with their secret.
    code_challenge: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Refresh family minted from this code; revoked if the code is ever replayed.
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)


class ProviderIdentity(Base):
    __tablename__ = "provider_identities"
    __table_args__ = (
        UniqueConstraint("issuer", "subject", name="uq_provider_identities_subject"),
    )

    # Binds an external (issuer, subject) pair to exactly one user.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    issuer: Mapped[str] = mapped_column(String)
    subject: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())


class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"
    __table_args__ = (
        Index("ix_audit_log_entries_subject_id", "subject_user_id", "id"),
    )

    # Monotonic id doubles as the keyset pagination cursor.
    id: Mapped[int] = mapped_column(MonotonicId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    # success|failure
    outcome: Mapped[str] = mapped_column(String, default="success", nullable=False)
    # Null for system actions and anonymous failures.
    actor_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Effective role label of the actor when the action happened.
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Whose timeline this entry belongs to.
    subject_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Correlated application or service client.
    client_name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Sanitized change payload.
    changes_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
