from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.apps.api.deps import get_app_settings, get_db, require_access
from teamauth.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from teamauth.apps.api.response import ApiModel, SuccessEnvelope, success_response
from teamauth.apps.api.schemas import EmailResponse, UserResponse, email_payload, user_payload
from teamauth.core.errors import ForbiddenError
from teamauth.persistence.repos import identity as identity_repo
from teamauth.services import identity
from teamauth.services.audit import get_request_context, record_event
from teamauth.services.guard import AccessPolicy, Principal, authority_scope, managed_target


router = APIRouter(prefix="/identity", tags=["identity"], responses=DEFAULT_ERROR_RESPONSES)

# Self-service endpoints act on the caller's own account.
SELF_POLICY = AccessPolicy()
PROVISION_POLICY = AccessPolicy(required_permissions=frozenset({"users:create"}))
ADMIN_EMAIL_POLICY = AccessPolicy(
    required_permissions=frozenset({"users:update"}),
    checks=(managed_target("users:update"),),
)


class LinkEmailRequest(ApiModel):
    address: str = Field(min_length=3, max_length=320)
    kind: str = identity.EMAIL_KIND_PERSONAL
    organization_id: str | None = None


class AdminLinkEmailRequest(LinkEmailRequest):
    # Bulk onboarding may skip the verification round-trip.
    verified: bool = False


class VerifyEmailRequest(ApiModel):
    token: str = Field(min_length=1)


class ProvisionEmail(ApiModel):
    address: str = Field(min_length=3, max_length=320)
    kind: str = identity.EMAIL_KIND_PERSONAL
    organization_id: str | None = None
    verified: bool = True


class ProvisionUserRequest(ApiModel):
    display_name: str = Field(min_length=1, max_length=200)
    emails: list[ProvisionEmail] = Field(min_length=1)
    password: str | None = Field(default=None, min_length=8, max_length=1024)
    provenance: str | None = Field(default=None, max_length=64)


class EmailList(ApiModel):
    items: list[EmailResponse]


class LinkEmailResponse(ApiModel):
    email: EmailResponse
    verification_token: str | None = None


class EmailDeleteResponse(ApiModel):
    id: str
    deleted: bool


async def _require_organization_reach(
    db: AsyncSession, principal: Principal, permission: str, organization_ids: list[str | None]
) -> None:
    # Organization-scoped administrators only attach addresses of their own organization.
    reach = await authority_scope(db, principal, permission)
    if reach is not None and any(organization_id != reach for organization_id in organization_ids):
        raise ForbiddenError("Caller cannot act for another organization")


def _link_response(request: Request, result: identity.LinkResult) -> LinkEmailResponse:
    # The raw token normally leaves only through mail delivery.
    expose = get_app_settings(request).email_verification_expose_token
    return LinkEmailResponse(
        email=email_payload(result.email),
        verification_token=result.verification_token if expose else None,
    )


@router.get("/emails", response_model=SuccessEnvelope[EmailList])
async def list_emails(
    request: Request,
    principal: Principal = Depends(require_access(SELF_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    emails = await identity.list_emails(db, user_id=principal.subject_id)
    return success_response(request=request, data=EmailList(items=[email_payload(email) for email in emails]))


@router.post("/emails", response_model=SuccessEnvelope[LinkEmailResponse], status_code=status.HTTP_201_CREATED)
async def link_email(
    request: Request,
    payload: LinkEmailRequest,
    principal: Principal = Depends(require_access(SELF_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Self-linked addresses always start unverified.
    result = await identity.link_email(
        db,
        user_id=principal.subject_id,
        address=payload.address,
        kind=payload.kind,
        organization_id=payload.organization_id,
        verified=False,
        verification_ttl_hours=get_app_settings(request).email_verification_ttl_hours,
    )
    await record_event(
        session=db,
        action="email_linked",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        entity_type="linked_email",
        entity_id=result.email.id,
        payload={"address": result.email.address, "kind": result.email.kind},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=_link_response(request, result))


@router.post("/emails/verify", response_model=SuccessEnvelope[EmailResponse])
async def verify_email(
    request: Request,
    payload: VerifyEmailRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Possession of the token is the proof; no session is required.
    email = await identity.verify_email(db, raw_token=payload.token)
    await record_event(
        session=db,
        action="email_verified",
        actor_user_id=email.user_id,
        entity_type="linked_email",
        entity_id=email.id,
        payload={"address": email.address, "method": "token"},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=email_payload(email))


@router.delete("/emails/{email_id}", response_model=SuccessEnvelope[EmailDeleteResponse])
async def unlink_email(
    request: Request,
    email_id: str,
    principal: Principal = Depends(require_access(SELF_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await identity.unlink(db, user_id=principal.subject_id, email_id=email_id)
    await record_event(
        session=db,
        action="email_unlinked",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        entity_type="linked_email",
        entity_id=email_id,
        payload=snapshot,
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=EmailDeleteResponse(id=email_id, deleted=True))


@router.put("/emails/{email_id}/primary", response_model=SuccessEnvelope[EmailResponse])
async def set_primary_email(
    request: Request,
    email_id: str,
    principal: Principal = Depends(require_access(SELF_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    previous = await identity_repo.get_primary_email(db, principal.subject_id)
    email = await identity.set_primary(db, user_id=principal.subject_id, email_id=email_id)
    await record_event(
        session=db,
        action="email_primary_changed",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        entity_type="linked_email",
        entity_id=email.id,
        payload={"from": previous.address if previous else None, "to": email.address},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=email_payload(email))


@router.post("/users", response_model=SuccessEnvelope[UserResponse], status_code=status.HTTP_201_CREATED)
async def provision_user(
    request: Request,
    payload: ProvisionUserRequest,
    principal: Principal = Depends(require_access(PROVISION_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Administrative onboarding; the first address becomes a verified primary."""
    await _require_organization_reach(
        db, principal, "users:create", [item.organization_id for item in payload.emails]
    )
    user = await identity.provision_user(
        db,
        display_name=payload.display_name,
        emails=[
            identity.EmailSpec(
                address=item.address,
                kind=item.kind,
                organization_id=item.organization_id,
                verified=item.verified,
            )
            for item in payload.emails
        ],
        password=payload.password,
        provenance=payload.provenance,
    )
    emails = await identity_repo.list_user_emails(db, user.id)
    await record_event(
        session=db,
        action="user_created",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=user.id,
        entity_type="user",
        entity_id=user.id,
        payload={"source": "admin", "emails": [email.address for email in emails]},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=user_payload(user, emails))


@router.post(
    "/users/{user_id}/emails",
    response_model=SuccessEnvelope[LinkEmailResponse],
    status_code=status.HTTP_201_CREATED,
)
async def admin_link_email(
    request: Request,
    user_id: str,
    payload: AdminLinkEmailRequest,
    principal: Principal = Depends(require_access(ADMIN_EMAIL_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.organization_id is not None:
        await _require_organization_reach(db, principal, "users:update", [payload.organization_id])
    result = await identity.link_email(
        db,
        user_id=user_id,
        address=payload.address,
        kind=payload.kind,
        organization_id=payload.organization_id,
        verified=payload.verified,
        verification_ttl_hours=get_app_settings(request).email_verification_ttl_hours,
    )
    await record_event(
        session=db,
        action="email_linked",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=user_id,
        entity_type="linked_email",
        entity_id=result.email.id,
        payload={"address": result.email.address, "kind": result.email.kind, "verified": payload.verified},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=_link_response(request, result))


@router.post("/users/{user_id}/emails/{email_id}/verify", response_model=SuccessEnvelope[EmailResponse])
async def admin_verify_email(
    request: Request,
    user_id: str,
    email_id: str,
    principal: Principal = Depends(require_access(ADMIN_EMAIL_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    pending = await identity_repo.get_user_email(db, user_id=user_id, email_id=email_id)
    if pending is not None and pending.organization_id is not None:
        await _require_organization_reach(db, principal, "users:update", [pending.organization_id])
    email = await identity.mark_verified(db, user_id=user_id, email_id=email_id)
    await record_event(
        session=db,
        action="email_verified",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=user_id,
        entity_type="linked_email",
        entity_id=email.id,
        payload={"address": email.address, "method": "admin"},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=email_payload(email))
