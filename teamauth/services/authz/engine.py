from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.timeutil import as_utc
from teamauth.core.errors import ConflictError, ForbiddenError, NotFoundError, ScopeMismatchError
from teamauth.domain.models import Organization, RoleAssignment, User
from teamauth.persistence.repos import roles as roles_repo
from teamauth.services.authz.roles import (
    SCOPE_GLOBAL,
    SCOPE_ORGANIZATION,
    RoleDefinition,
    get_role,
    highest_rank,
    permissions_for_roles,
    ROLE_DEFINITIONS,
)


logger = logging.getLogger(__name__)

_UNSET: Any = object()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PermissionSet:
    role_types: frozenset[str]
    permissions: frozenset[str]


class PermissionCache:
    """Short-lived permission sets keyed by (user, organization, role version).

    A role change bumps the user's role version, so stale entries are never
    read again; the TTL bounds cross-process drift and ``max_entries`` bounds
    memory. Access is confined to the event loop, so no lock is needed.
    """

    def __init__(self, ttl_s: float, *, max_entries: int = 10_000) -> None:
        self.ttl_s = ttl_s
        self.max_entries = max(1, max_entries)
        self._entries: dict[tuple[str, str | None, int], tuple[float, PermissionSet]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: tuple[str, str | None, int]) -> PermissionSet | None:
        if self.ttl_s <= 0:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: tuple[str, str | None, int], value: PermissionSet) -> None:
        if self.ttl_s <= 0:
            return
        now = time.monotonic()
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict(now)
        self._entries[key] = (now + self.ttl_s, value)

    def _evict(self, now: float) -> None:
        # Expired entries go first; if the cache is still full, the ones closest to expiry follow.
        for key in [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]:
            self._entries.pop(key, None)
        overflow = len(self._entries) - self.max_entries + 1
        if overflow > 0:
            for key in sorted(self._entries, key=lambda item: self._entries[item][0])[:overflow]:
                self._entries.pop(key, None)

    def invalidate_user(self, user_id: str) -> None:
        for key in [key for key in self._entries if key[0] == user_id]:
            self._entries.pop(key, None)


def _is_active(assignment: RoleAssignment, now: datetime) -> bool:
    expires_at = as_utc(assignment.expires_at)
    return expires_at is None or expires_at > now


async def effective_roles(
    session: AsyncSession,
    user_id: str,
    organization_id: str | None = None,
    *,
    now: datetime | None = None,
) -> list[RoleAssignment]:
    """Non-expired grants of ``user_id`` that apply in ``organization_id``.

    Global and individual roles always apply; organization roles only when
    their scope entity equals the requested organization.
    """
    resolved_now = now or _utc_now()
    rows = await roles_repo.list_active_assignments(
        session,
        user_id=user_id,
        organization_id=organization_id,
        now=resolved_now,
    )
    return [row for row in rows if _is_active(row, resolved_now)]


async def resolve_permissions(
    session: AsyncSession,
    user_id: str,
    organization_id: str | None = None,
    *,
    cache: PermissionCache | None = None,
    now: datetime | None = None,
) -> PermissionSet:
    version = await roles_repo.get_role_version(session, user_id)
    if version is None:
        return PermissionSet(role_types=frozenset(), permissions=frozenset())
    key = (user_id, organization_id, int(version))
    if cache is not None and now is None:
        cached = cache.get(key)
        if cached is not None:
            return cached
    assignments = await effective_roles(session, user_id, organization_id, now=now)
    role_types = frozenset(assignment.role_type for assignment in assignments)
    resolved = PermissionSet(role_types=role_types, permissions=permissions_for_roles(role_types))
    # Evaluations pinned to an explicit instant bypass the cache.
    if cache is not None and now is None:
        cache.put(key, resolved)
    return resolved


async def global_role_types(session: AsyncSession, user_id: str, *, now: datetime | None = None) -> frozenset[str]:
    # Roles whose authority is not bounded by any organization.
    assignments = await effective_roles(session, user_id, None, now=now)
    return frozenset(row.role_type for row in assignments if row.scope == SCOPE_GLOBAL)


async def highest_held_rank(session: AsyncSession, user_id: str, *, now: datetime | None = None) -> int:
    """Rank of the strongest live grant ``user_id`` holds in any scope.

    Grants in every organization count, so a member of two organizations is
    measured by the stronger of the two.
    """
    resolved_now = now or _utc_now()
    assignments = await roles_repo.list_user_assignments(session, user_id)
    return highest_rank(row.role_type for row in assignments if _is_active(row, resolved_now))


async def permissions_for(
    session: AsyncSession,
    user_id: str,
    organization_id: str | None = None,
    *,
    cache: PermissionCache | None = None,
) -> frozenset[str]:
    resolved = await resolve_permissions(session, user_id, organization_id, cache=cache)
    return resolved.permissions


def _validate_scope(definition: RoleDefinition, scope: str, scope_entity_id: str | None) -> None:
    # The role type fixes its scope; the entity id must agree with it.
    if scope != definition.scope:
        raise ScopeMismatchError(f"{definition.name} is a {definition.scope} role")
    if definition.scope == SCOPE_ORGANIZATION and not scope_entity_id:
        raise ScopeMismatchError("Organization-scoped roles require a scope entity id")
    if definition.scope != SCOPE_ORGANIZATION and scope_entity_id:
        raise ScopeMismatchError(f"{definition.scope.capitalize()} roles cannot carry a scope entity id")


async def _require_grant_authority(
    session: AsyncSession,
    *,
    actor_id: str,
    target: RoleDefinition,
    scope_entity_id: str | None,
) -> None:
    """Reject grants the actor could not hold authority over.

    The actor needs ``roles:assign`` in the target context and an
    administrative role ranked at least as high as the target. Only a global
    administrative role may hand out global or individual roles.
    """
    context = scope_entity_id if target.scope == SCOPE_ORGANIZATION else None
    held = await effective_roles(session, actor_id, context)
    held_definitions = [ROLE_DEFINITIONS[row.role_type] for row in held if row.role_type in ROLE_DEFINITIONS]
    if "roles:assign" not in permissions_for_roles(d.name for d in held_definitions):
        raise ForbiddenError("Caller cannot assign roles in this scope")
    for definition in held_definitions:
        if not definition.administrative or definition.rank < target.rank:
            continue
        if target.scope != SCOPE_ORGANIZATION and definition.scope != SCOPE_GLOBAL:
            continue
        return
    raise ForbiddenError(f"Caller cannot grant {target.name}")


async def _bump(session: AsyncSession, user_id: str, cache: PermissionCache | None) -> None:
    await roles_repo.bump_role_version(session, user_id)
    if cache is not None:
        cache.invalidate_user(user_id)


async def assign(
    session: AsyncSession,
    *,
    target_user_id: str,
    role_type: str,
    scope: str,
    scope_entity_id: str | None = None,
    granted_by: str | None,
    expires_at: datetime | None = None,
    cache: PermissionCache | None = None,
) -> RoleAssignment:
    """Grant ``role_type`` to a user. ``granted_by=None`` marks a system grant."""
    definition = get_role(role_type)
    _validate_scope(definition, scope, scope_entity_id)
    if await session.get(User, target_user_id) is None:
        raise NotFoundError("User not found")
    if scope_entity_id is not None and await session.get(Organization, scope_entity_id) is None:
        raise NotFoundError("Organization not found")
    if granted_by is not None:
        await _require_grant_authority(
            session, actor_id=granted_by, target=definition, scope_entity_id=scope_entity_id
        )
    existing = await roles_repo.find_assignment(
        session,
        user_id=target_user_id,
        role_type=definition.name,
        scope_entity_id=scope_entity_id,
    )
    if existing is not None:
        raise ConflictError("User already has this role in this scope")

    assignment = RoleAssignment(
        user_id=target_user_id,
        role_type=definition.name,
        scope=definition.scope,
        scope_entity_id=scope_entity_id,
        expires_at=expires_at,
        granted_by=granted_by,
        created_at=_utc_now(),
    )
    session.add(assignment)
    await session.flush()
    await _bump(session, target_user_id, cache)
    logger.info(
        "role_assigned user_id=%s role=%s scope_entity_id=%s granted_by=%s",
        target_user_id,
        definition.name,
        scope_entity_id,
        granted_by,
    )
    return assignment


async def update(
    session: AsyncSession,
    *,
    assignment_id: str,
    updated_by: str | None,
    expires_at: datetime | None = _UNSET,
    scope_entity_id: str | None = _UNSET,
    cache: PermissionCache | None = None,
) -> RoleAssignment:
    # Changing the scope entity is checked as a revoke in the old context plus a grant in the new one.
    assignment = await roles_repo.get_assignment(session, assignment_id)
    if assignment is None:
        raise NotFoundError("Role assignment not found")
    definition = get_role(assignment.role_type)
    new_entity = assignment.scope_entity_id if scope_entity_id is _UNSET else scope_entity_id
    _validate_scope(definition, assignment.scope, new_entity)
    if updated_by is not None:
        await _require_grant_authority(
            session, actor_id=updated_by, target=definition, scope_entity_id=assignment.scope_entity_id
        )
        if new_entity != assignment.scope_entity_id:
            await _require_grant_authority(
                session, actor_id=updated_by, target=definition, scope_entity_id=new_entity
            )
    if new_entity != assignment.scope_entity_id:
        if new_entity is not None and await session.get(Organization, new_entity) is None:
            raise NotFoundError("Organization not found")
        duplicate = await roles_repo.find_assignment(
            session,
            user_id=assignment.user_id,
            role_type=assignment.role_type,
            scope_entity_id=new_entity,
        )
        if duplicate is not None:
            raise ConflictError("User already has this role in this scope")
        assignment.scope_entity_id = new_entity
    if expires_at is not _UNSET:
        assignment.expires_at = expires_at
    await session.flush()
    await _bump(session, assignment.user_id, cache)
    logger.info("role_updated assignment_id=%s updated_by=%s", assignment_id, updated_by)
    return assignment


async def revoke(
    session: AsyncSession,
    *,
    assignment_id: str,
    revoked_by: str | None,
    cache: PermissionCache | None = None,
) -> dict[str, Any]:
    """Hard-delete a grant and return a snapshot of what was removed."""
    assignment = await roles_repo.get_assignment(session, assignment_id)
    if assignment is None:
        raise NotFoundError("Role assignment not found")
    definition = get_role(assignment.role_type)
    if revoked_by is not None:
        await _require_grant_authority(
            session, actor_id=revoked_by, target=definition, scope_entity_id=assignment.scope_entity_id
        )
    snapshot = assignment_snapshot(assignment)
    await session.delete(assignment)
    await session.flush()
    await _bump(session, snapshot["user_id"], cache)
    logger.info("role_removed assignment_id=%s revoked_by=%s", assignment_id, revoked_by)
    return snapshot


def assignment_snapshot(assignment: RoleAssignment) -> dict[str, Any]:
    expires_at = as_utc(assignment.expires_at)
    return {
        "id": assignment.id,
        "user_id": assignment.user_id,
        "role_type": assignment.role_type,
        "scope": assignment.scope,
        "scope_entity_id": assignment.scope_entity_id,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "granted_by": assignment.granted_by,
    }


async def prune_expired_assignments(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Retention sweep: expired grants are already inert, this reclaims the rows.
    cutoff = now or _utc_now()
    user_ids = await roles_repo.delete_expired_assignments(session, cutoff=cutoff)
    for user_id in sorted(set(user_ids)):
        await roles_repo.bump_role_version(session, user_id)
    return len(user_ids)
