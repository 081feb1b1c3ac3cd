from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.apps.api.deps import get_db, get_permission_cache, require_access
from teamauth.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from teamauth.apps.api.response import ApiModel, SuccessEnvelope, success_response
from teamauth.apps.api.schemas import RoleAssignmentResponse, assignment_payload
from teamauth.core.errors import NotFoundError
from teamauth.persistence.repos import identity as identity_repo
from teamauth.persistence.repos import roles as roles_repo
from teamauth.services.audit import get_request_context, record_event
from teamauth.services.authz import engine
from teamauth.services.authz.roles import ADMINISTRATIVE_ROLES
from teamauth.services.guard import AccessPolicy, Principal, managed_target


router = APIRouter(prefix="/roles", tags=["roles"], responses=DEFAULT_ERROR_RESPONSES)

# Role administration is staff-only; service tokens never reach it.
ROLE_ADMIN_POLICY = AccessPolicy(required_roles=ADMINISTRATIVE_ROLES)
# Organization administrators only inspect members of their organization.
ROLE_READ_POLICY = AccessPolicy(
    required_roles=ADMINISTRATIVE_ROLES,
    checks=(managed_target("roles:read", rank_bound=False),),
)


class AssignRoleRequest(ApiModel):
    user_id: str
    role_type: str
    scope: str
    scope_entity_id: str | None = None
    expires_at: datetime | None = None


class UpdateRoleRequest(ApiModel):
    # Omitted fields are left unchanged; explicit nulls clear them.
    expires_at: datetime | None = None
    scope_entity_id: str | None = None


class RoleAssignmentList(ApiModel):
    user_id: str
    items: list[RoleAssignmentResponse]


class RoleRemovedResponse(ApiModel):
    id: str
    removed: bool


class PermissionsResponse(ApiModel):
    user_id: str
    organization_id: str | None
    roles: list[str]
    permissions: list[str]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime | None) -> datetime | None:
    # Naive timestamps from clients are taken as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@router.post("/assign", response_model=SuccessEnvelope[RoleAssignmentResponse], status_code=status.HTTP_201_CREATED)
async def assign_role(
    request: Request,
    payload: AssignRoleRequest,
    principal: Principal = Depends(require_access(ROLE_ADMIN_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    assignment = await engine.assign(
        db,
        target_user_id=payload.user_id,
        role_type=payload.role_type,
        scope=payload.scope,
        scope_entity_id=payload.scope_entity_id,
        granted_by=principal.subject_id,
        expires_at=_as_aware(payload.expires_at),
        cache=get_permission_cache(request),
    )
    await record_event(
        session=db,
        action="role_assigned",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=assignment.user_id,
        entity_type="role_assignment",
        entity_id=assignment.id,
        payload=engine.assignment_snapshot(assignment),
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=assignment_payload(assignment, now=_utc_now()))


@router.put("/{assignment_id}", response_model=SuccessEnvelope[RoleAssignmentResponse])
async def update_role(
    request: Request,
    assignment_id: str,
    payload: UpdateRoleRequest,
    principal: Principal = Depends(require_access(ROLE_ADMIN_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    before = await roles_repo.get_assignment(db, assignment_id)
    previous = engine.assignment_snapshot(before) if before is not None else None
    changes: dict = {}
    if "expires_at" in payload.model_fields_set:
        changes["expires_at"] = _as_aware(payload.expires_at)
    if "scope_entity_id" in payload.model_fields_set:
        changes["scope_entity_id"] = payload.scope_entity_id
    assignment = await engine.update(
        db,
        assignment_id=assignment_id,
        updated_by=principal.subject_id,
        cache=get_permission_cache(request),
        **changes,
    )
    await record_event(
        session=db,
        action="role_updated",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=assignment.user_id,
        entity_type="role_assignment",
        entity_id=assignment.id,
        payload={"before": previous, "after": engine.assignment_snapshot(assignment)},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=assignment_payload(assignment, now=_utc_now()))


@router.delete("/{assignment_id}", response_model=SuccessEnvelope[RoleRemovedResponse])
async def remove_role(
    request: Request,
    assignment_id: str,
    principal: Principal = Depends(require_access(ROLE_ADMIN_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await engine.revoke(
        db,
        assignment_id=assignment_id,
        revoked_by=principal.subject_id,
        cache=get_permission_cache(request),
    )
    await record_event(
        session=db,
        action="role_removed",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=snapshot["user_id"],
        entity_type="role_assignment",
        entity_id=assignment_id,
        payload=snapshot,
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=RoleRemovedResponse(id=assignment_id, removed=True))


@router.get("/user/{user_id}", response_model=SuccessEnvelope[RoleAssignmentList])
async def list_user_roles(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_access(ROLE_READ_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Expired grants are listed too, flagged inactive, until the sweep removes them.
    if await identity_repo.get_user(db, user_id) is None:
        raise NotFoundError("User not found")
    now = _utc_now()
    rows = await roles_repo.list_user_assignments(db, user_id)
    data = RoleAssignmentList(user_id=user_id, items=[assignment_payload(row, now=now) for row in rows])
    return success_response(request=request, data=data)


@router.get("/permissions/{user_id}", response_model=SuccessEnvelope[PermissionsResponse])
async def user_permissions(
    request: Request,
    user_id: str,
    organization_id: str | None = Query(default=None, alias="organizationId"),
    principal: Principal = Depends(require_access(ROLE_READ_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if await identity_repo.get_user(db, user_id) is None:
        raise NotFoundError("User not found")
    resolved = await engine.resolve_permissions(
        db, user_id, organization_id, cache=get_permission_cache(request)
    )
    data = PermissionsResponse(
        user_id=user_id,
        organization_id=organization_id,
        roles=sorted(resolved.role_types),
        permissions=sorted(resolved.permissions),
    )
    return success_response(request=request, data=data)
