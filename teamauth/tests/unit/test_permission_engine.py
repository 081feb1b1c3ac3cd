from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from teamauth.core.errors import ConflictError, ForbiddenError, InvalidRoleError, NotFoundError, ScopeMismatchError
from teamauth.persistence.db import SessionLocal
from teamauth.persistence.repos import roles as roles_repo
from teamauth.services.authz import engine
from teamauth.tests.utils.identity import create_admin, create_organization, create_user


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _grant(
    user_id: str,
    role_type: str,
    scope: str,
    entity: str | None = None,
    *,
    expires_at: datetime | None = None,
):
    async with SessionLocal() as session:
        assignment = await engine.assign(
            session,
            target_user_id=user_id,
            role_type=role_type,
            scope=scope,
            scope_entity_id=entity,
            granted_by=None,
            expires_at=expires_at,
        )
        await session.commit()
        return assignment



@pytest.mark.asyncio
async def test_organization_roles_apply_only_in_their_organization() -> None:
    # A client_admin of A holds nothing in B.
    org_a = await create_organization("A")
    org_b = await create_organization("B")
    user_id = await create_user(roles=[("client_admin", org_a)])
    async with SessionLocal() as session:
        in_a = await engine.permissions_for(session, user_id, org_a)
        in_b = await engine.permissions_for(session, user_id, org_b)
        unbound = await engine.permissions_for(session, user_id, None)
    assert "users:create" in in_a
    assert in_b == frozenset()
    assert unbound == frozenset()


@pytest.mark.asyncio
async def test_global_roles_apply_everywhere() -> None:
    # Global and individual grants follow the user into every organization.
    org_id = await create_organization()
    user_id = await create_user(roles=[("internal_hr", None), ("candidate", None)])
    async with SessionLocal() as session:
        resolved = await engine.resolve_permissions(session, user_id, org_id)
    assert resolved.role_types == {"internal_hr", "candidate"}
    assert {"users:update", "profile:read"} <= resolved.permissions


@pytest.mark.asyncio
async def test_expired_grants_are_inert_and_pruned() -> None:
    # Expiry removes the permission immediately; the sweep reclaims the row later.
    user_id = await create_user()
    await _grant(user_id, "internal_finance", "global", expires_at=_utc_now() + timedelta(seconds=60))
    async with SessionLocal() as session:
        assert "billing:manage" in await engine.permissions_for(session, user_id)
        later = _utc_now() + timedelta(minutes=5)
        resolved = await engine.resolve_permissions(session, user_id, now=later)
        assert resolved.permissions == frozenset()
        removed = await engine.prune_expired_assignments(session, now=later)
        await session.commit()
    assert removed == 1
    async with SessionLocal() as session:
        assert await roles_repo.list_user_assignments(session, user_id) == []


@pytest.mark.asyncio
async def test_scope_must_match_role_type() -> None:
    # Scope and entity id have to agree with the role definition.
    org_id = await create_organization()
    user_id = await create_user()
    with pytest.raises(ScopeMismatchError):
        await _grant(user_id, "client_admin", "global")
    with pytest.raises(ScopeMismatchError):
        await _grant(user_id, "client_admin", "organization")
    with pytest.raises(ScopeMismatchError):
        await _grant(user_id, "super_admin", "global", org_id)
    with pytest.raises(InvalidRoleError):
        await _grant(user_id, "admin", "organization", org_id)


@pytest.mark.asyncio
async def test_duplicate_grants_conflict() -> None:
    # One grant per (user, role, scope entity).
    org_id = await create_organization()
    user_id = await create_user()
    await _grant(user_id, "client_hr", "organization", org_id)
    with pytest.raises(ConflictError):
        await _grant(user_id, "client_hr", "organization", org_id)


@pytest.mark.asyncio
async def test_unknown_targets_are_not_found() -> None:
    # Grants need an existing user and organization.
    user_id = await create_user()
    with pytest.raises(NotFoundError):
        await _grant("missing-user", "candidate", "individual")
    with pytest.raises(NotFoundError):
        await _grant(user_id, "client_hr", "organization", "missing-org")


@pytest.mark.asyncio
async def test_grantors_cannot_escalate() -> None:
    # A client_admin may staff their own organization and nothing above it.
    org_a = await create_organization("A")
    org_b = await create_organization("B")
    client_admin = await create_admin("client_admin", org_a)
    target = await create_user()
    async with SessionLocal() as session:
        granted = await engine.assign(
            session,
            target_user_id=target,
            role_type="client_hr",
            scope="organization",
            scope_entity_id=org_a,
            granted_by=client_admin,
        )
        await session.commit()
    assert granted.granted_by == client_admin
    for role_type, scope, entity in (
        ("super_admin", "global", None),
        ("internal_employee", "global", None),
        ("client_hr", "organization", org_b),
    ):
        async with SessionLocal() as session:
            with pytest.raises(ForbiddenError):
                await engine.assign(
                    session,
                    target_user_id=target,
                    role_type=role_type,
                    scope=scope,
                    scope_entity_id=entity,
                    granted_by=client_admin,
                )


@pytest.mark.asyncio
async def test_account_manager_cannot_mint_super_admins() -> None:
    # Grant authority is capped at the grantor's own rank.
    manager = await create_admin("internal_account_manager")
    target = await create_user()
    async with SessionLocal() as session:
        with pytest.raises(ForbiddenError):
            await engine.assign(
                session,
                target_user_id=target,
                role_type="super_admin",
                scope="global",
                granted_by=manager,
            )


@pytest.mark.asyncio
async def test_revocation_takes_effect_through_the_cache() -> None:
    # Role changes bump the version, so cached sets are never served stale.
    org_id = await create_organization()
    user_id = await create_user()
    assignment = await _grant(user_id, "client_recruiter", "organization", org_id)
    cache = engine.PermissionCache(ttl_s=30)
    async with SessionLocal() as session:
        assert "invitations:create" in await engine.permissions_for(session, user_id, org_id, cache=cache)
    async with SessionLocal() as session:
        await engine.revoke(session, assignment_id=assignment.id, revoked_by=None)
        await session.commit()
    async with SessionLocal() as session:
        assert await engine.permissions_for(session, user_id, org_id, cache=cache) == frozenset()


def test_cache_stays_within_its_entry_limit(monkeypatch) -> None:
    # A full cache drops expired entries first, then the ones nearest expiry.
    clock = [100.0]
    monkeypatch.setattr(engine.time, "monotonic", lambda: clock[0])
    cache = engine.PermissionCache(ttl_s=10, max_entries=2)
    value = engine.PermissionSet(role_types=frozenset(), permissions=frozenset())
    cache.put(("a", None, 0), value)
    clock[0] = 105.0
    cache.put(("b", None, 0), value)
    clock[0] = 106.0
    cache.put(("c", None, 0), value)
    assert len(cache) == 2
    assert cache.get(("a", None, 0)) is None
    assert cache.get(("b", None, 0)) is value
    # Rewriting a cached key never evicts a neighbour.
    cache.put(("c", None, 0), value)
    assert len(cache) == 2
    clock[0] = 116.5
    cache.put(("d", None, 0), value)
    assert len(cache) == 1
    assert cache.get(("d", None, 0)) is value


@pytest.mark.asyncio
async def test_update_moves_grant_between_organizations() -> None:
    # Re-pointing a grant is a revoke in the old organization plus a grant in the new one.
    org_a = await create_organization("A")
    org_b = await create_organization("B")
    user_id = await create_user()
    assignment = await _grant(user_id, "client_employee", "organization", org_a)
    async with SessionLocal() as session:
        updated = await engine.update(
            session, assignment_id=assignment.id, updated_by=None, scope_entity_id=org_b
        )
        await session.commit()
    assert updated.scope_entity_id == org_b
    async with SessionLocal() as session:
        assert await engine.permissions_for(session, user_id, org_a) == frozenset()
        assert "organizations:read" in await engine.permissions_for(session, user_id, org_b)
        with pytest.raises(ScopeMismatchError):
            await engine.update(session, assignment_id=assignment.id, updated_by=None, scope_entity_id=None)


@pytest.mark.asyncio
async def test_unknown_assignment_is_not_found() -> None:
    # Revoking a missing grant reports it instead of silently succeeding.
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await engine.revoke(session, assignment_id="missing", revoked_by=None)
