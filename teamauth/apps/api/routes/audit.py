from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.apps.api.deps import get_app_settings, get_db, require_access
from teamauth.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from teamauth.apps.api.response import ApiModel, SuccessEnvelope, success_response
from teamauth.apps.api.schemas import iso
from teamauth.domain.models import AuditLogEntry
from teamauth.services.audit import consolidate, query_history
from teamauth.services.guard import AccessPolicy, Principal, managed_target


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)

AUDIT_READ_POLICY = AccessPolicy(
    required_scope="read:audit",
    checks=(managed_target("audit:read", allow_self=True),),
)


class AuditEntryResponse(ApiModel):
    id: int
    occurred_at: str | None
    action: str
    outcome: str
    actor_user_id: str | None
    actor_role: str | None
    subject_user_id: str | None
    entity_type: str | None
    entity_id: str | None
    client_name: str | None
    changes: dict[str, Any] | None
    request_id: str | None
    # Consecutive same-action entries folded into this one; 1 when not consolidated.
    count: int = 1


class AuditPageResponse(ApiModel):
    items: list[AuditEntryResponse]
    next_cursor: str | None
    has_more: bool


def _entry_payload(entry: AuditLogEntry, *, count: int = 1) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        occurred_at=iso(entry.occurred_at),
        action=entry.action,
        outcome=entry.outcome,
        actor_user_id=entry.actor_user_id,
        actor_role=entry.actor_role,
        subject_user_id=entry.subject_user_id,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        client_name=entry.client_name,
        changes=entry.changes_json,
        request_id=entry.request_id,
        count=count,
    )


@router.get("/{user_id}", response_model=SuccessEnvelope[AuditPageResponse])
async def user_audit_history(
    request: Request,
    user_id: str,
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    consolidated: bool = Query(default=False, alias="consolidate"),
    principal: Principal = Depends(require_access(AUDIT_READ_POLICY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Newest-first audit timeline for one user, keyset-paginated.

    ``consolidate`` folds runs within the returned page only; a run split
    across pages shows up once per page.
    """
    settings = get_app_settings(request)
    page_size = min(limit or settings.audit_default_page_size, settings.audit_max_page_size)
    page = await query_history(
        db,
        subject_user_id=user_id,
        page_size=page_size,
        cursor=cursor,
        secret=settings.audit_cursor_secret,
    )
    if consolidated:
        # Consolidation reads oldest-first; the response stays newest-first.
        groups = consolidate(list(reversed(page.entries)))
        items = [_entry_payload(group.entry, count=group.count) for group in reversed(groups)]
    else:
        items = [_entry_payload(entry) for entry in page.entries]
    data = AuditPageResponse(items=items, next_cursor=page.next_cursor, has_more=page.has_more)
    return success_response(request=request, data=data)
