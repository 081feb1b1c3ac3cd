from __future__ import annotations

from datetime import datetime

from teamauth.apps.api.response import ApiModel
from teamauth.core.timeutil import as_utc
from teamauth.domain.models import LinkedEmail, RoleAssignment, User


def iso(value: datetime | None) -> str | None:
    resolved = as_utc(value)
    return resolved.isoformat() if resolved else None


class EmailResponse(ApiModel):
    id: str
    address: str
    kind: str
    organization_id: str | None
    is_primary: bool
    verified: bool
    verified_at: str | None
    added_at: str | None


class UserResponse(ApiModel):
    id: str
    display_name: str
    status: str
    primary_email: str | None
    emails: list[EmailResponse]
    provenance: str | None = None
    created_at: str | None = None
    archived_at: str | None = None


class RoleAssignmentResponse(ApiModel):
    id: str
    user_id: str
    role_type: str
    scope: str
    scope_entity_id: str | None
    expires_at: str | None
    granted_by: str | None
    active: bool
    created_at: str | None


def email_payload(email: LinkedEmail) -> EmailResponse:
    return EmailResponse(
        id=email.id,
        address=email.address,
        kind=email.kind,
        organization_id=email.organization_id,
        is_primary=email.is_primary,
        verified=email.is_verified,
        verified_at=iso(email.verified_at),
        added_at=iso(email.added_at),
    )


def user_payload(user: User, emails: list[LinkedEmail]) -> UserResponse:
    primary = next((email.address for email in emails if email.is_primary), None)
    return UserResponse(
        id=user.id,
        display_name=user.display_name,
        status=user.status,
        primary_email=primary,
        emails=[email_payload(email) for email in emails],
        provenance=user.provenance,
        created_at=iso(user.created_at),
        archived_at=iso(user.archived_at),
    )


def assignment_payload(assignment: RoleAssignment, *, now: datetime) -> RoleAssignmentResponse:
    expires_at = as_utc(assignment.expires_at)
    return RoleAssignmentResponse(
        id=assignment.id,
        user_id=assignment.user_id,
        role_type=assignment.role_type,
        scope=assignment.scope,
        scope_entity_id=assignment.scope_entity_id,
        expires_at=iso(expires_at),
        granted_by=assignment.granted_by,
        active=expires_at is None or expires_at > now,
        created_at=iso(assignment.created_at),
    )
