from __future__ import annotations

import pytest

from teamauth.domain.models import RoleAssignment, User
from teamauth.persistence.db import SessionLocal
from teamauth.persistence.repos import roles as roles_repo
from teamauth.services.authz import engine
from teamauth.services.authz.migration import LEGACY_PROVENANCE, migrate_legacy_assignments
from teamauth.tests.utils.identity import create_organization, create_user


async def _legacy_row(user_id: str, role_type: str, scope: str, entity: str | None = None) -> str:
    async with SessionLocal() as session:
        row = RoleAssignment(user_id=user_id, role_type=role_type, scope=scope, scope_entity_id=entity)
        session.add(row)
        await session.commit()
        return row.id


@pytest.mark.asyncio
async def test_legacy_rows_are_rewritten_to_canonical_roles() -> None:
    # admin/client becomes client_admin/organization and starts granting permissions.
    org_id = await create_organization()
    user_id = await create_user()
    await _legacy_row(user_id, "admin", "client", org_id)
    await _legacy_row(user_id, "account_manager", "all")
    async with SessionLocal() as session:
        assert await engine.permissions_for(session, user_id, org_id) == frozenset()
        report = await migrate_legacy_assignments(session)
        await session.commit()
    assert report.migrated == 2
    assert report.merged == 0
    assert report.skipped == []
    async with SessionLocal() as session:
        rows = await roles_repo.list_user_assignments(session, user_id)
        user = await session.get(User, user_id)
        permissions = await engine.permissions_for(session, user_id, org_id)
    assert sorted((row.role_type, row.scope, row.scope_entity_id) for row in rows) == sorted(
        [("client_admin", "organization", org_id), ("internal_account_manager", "global", None)]
    )
    assert user.provenance == LEGACY_PROVENANCE
    assert user.role_version == 1
    assert {"users:create", "organizations:manage"} <= permissions


@pytest.mark.asyncio
async def test_duplicates_merge_into_the_existing_grant() -> None:
    # A legacy row equal to a canonical grant already held is removed.
    org_id = await create_organization()
    user_id = await create_user(roles=[("client_employee", org_id)])
    await _legacy_row(user_id, "client_member", "client", org_id)
    async with SessionLocal() as session:
        report = await migrate_legacy_assignments(session)
        await session.commit()
    assert (report.migrated, report.merged) == (0, 1)
    async with SessionLocal() as session:
        rows = await roles_repo.list_user_assignments(session, user_id)
    assert [(row.role_type, row.scope_entity_id) for row in rows] == [("client_employee", org_id)]


@pytest.mark.asyncio
async def test_unmappable_rows_are_reported_and_left_alone() -> None:
    # Unknown roles and organization roles without an organization are skipped.
    user_id = await create_user()
    unknown_id = await _legacy_row(user_id, "wizard", "all")
    orphan_id = await _legacy_row(user_id, "admin", "client")
    async with SessionLocal() as session:
        report = await migrate_legacy_assignments(session)
        await session.commit()
    assert report.migrated == 0
    assert {item["id"] for item in report.skipped} == {unknown_id, orphan_id}
    async with SessionLocal() as session:
        assert (await session.get(RoleAssignment, unknown_id)).role_type == "wizard"


@pytest.mark.asyncio
async def test_dry_run_changes_nothing() -> None:
    # The report is computed but rows keep their legacy values.
    org_id = await create_organization()
    user_id = await create_user()
    row_id = await _legacy_row(user_id, "hr", "client", org_id)
    async with SessionLocal() as session:
        report = await migrate_legacy_assignments(session, dry_run=True)
        await session.rollback()
    assert report.migrated == 1
    async with SessionLocal() as session:
        row = await session.get(RoleAssignment, row_id)
    assert (row.role_type, row.scope) == ("hr", "client")


@pytest.mark.asyncio
async def test_canonical_rows_are_untouched() -> None:
    # Running the migration on a clean database is a no-op.
    user_id = await create_user(roles=[("super_admin", None)])
    async with SessionLocal() as session:
        report = await migrate_legacy_assignments(session)
        await session.commit()
    assert (report.migrated, report.merged, report.skipped) == (0, 0, [])
    assert report.users == set()
    async with SessionLocal() as session:
        assert (await session.get(User, user_id)).provenance is None
