from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.apps.api.deps import get_db, get_token_service, require_access
from teamauth.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from teamauth.apps.api.response import ApiModel, SuccessEnvelope, success_response
from teamauth.apps.api.schemas import UserResponse, user_payload
from teamauth.core.errors import NotFoundError
from teamauth.persistence.repos import identity as identity_repo
from teamauth.services import identity
from teamauth.services.audit import get_request_context, record_event
from teamauth.services.guard import AccessPolicy, Principal, authority_scope, managed_target


router = APIRouter(prefix="/users", tags=["users"], responses=DEFAULT_ERROR_RESPONSES)

# Same paths for people and services; services opt in through read:users.
LIST_USERS_POLICY = AccessPolicy(required_scope="read:users", required_permissions=frozenset({"users:read"}))
READ_USER_POLICY = AccessPolicy(
    required_scope="read:users",
    checks=(managed_target("users:read", allow_self=True, rank_bound=False),),
)
# Writes also require the target to hold no role above the caller's.
UPDATE_USER_POLICY = AccessPolicy(checks=(managed_target("users:update", allow_self=True),))
ARCHIVE_USER_POLICY = AccessPolicy(
    required_permissions=frozenset({"users:delete"}),
    checks=(managed_target("users:delete"),),
)


class UserList(ApiModel):
    items: list[UserResponse]
    offset: int
    limit: int


class UpdateUserRequest(ApiModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=200)
    password: str | None = Field(default=None, min_length=8, max_length=1024)


async def _load_user_payload(db: AsyncSession, user_id: str) -> UserResponse:
    user = await identity_repo.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user_payload(user, await identity_repo.list_user_emails(db, user_id))


@router.get("", response_model=SuccessEnvelope[UserList])
async def list_users(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_access(LIST_USERS_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Organization-scoped readers only see members of their session's organization.
    organization_id = await authority_scope(db, principal, "users:read")
    users = await identity_repo.list_users(
        db, status=status_filter, organization_id=organization_id, offset=offset, limit=limit
    )
    items = [user_payload(user, await identity_repo.list_user_emails(db, user.id)) for user in users]
    return success_response(request=request, data=UserList(items=items, offset=offset, limit=limit))


@router.get("/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def get_user(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_access(READ_USER_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await _load_user_payload(db, user_id))


@router.patch("/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def update_user(
    request: Request,
    user_id: str,
    payload: UpdateUserRequest,
    principal: Principal = Depends(require_access(UPDATE_USER_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await identity.update_profile(
        db,
        user_id=user_id,
        display_name=payload.display_name,
        password=payload.password,
    )
    await record_event(
        session=db,
        action="user_profile_updated",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=user_id,
        entity_type="user",
        entity_id=user_id,
        # Only the names of changed fields; the password itself never reaches the log.
        payload={"fields": sorted(payload.model_fields_set)},
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=await _load_user_payload(db, user_id))


@router.post("/{user_id}/archive", response_model=SuccessEnvelope[UserResponse])
async def archive_user(
    request: Request,
    user_id: str,
    principal: Principal = Depends(require_access(ARCHIVE_USER_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await identity.archive_user(db, user_id=user_id)
    await get_token_service(request).revoke_all(db, user_id)
    await record_event(
        session=db,
        action="user_archived",
        actor_user_id=principal.subject_id,
        actor_role=principal.role_label,
        subject_user_id=user_id,
        entity_type="user",
        entity_id=user_id,
        **get_request_context(request),
    )
    await db.commit()
    return success_response(request=request, data=await _load_user_payload(db, user_id))
