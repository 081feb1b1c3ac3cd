from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from teamauth.tests.utils.api import api_client, error_code, subject_actions
from teamauth.tests.utils.auth import service_headers, session_headers
from teamauth.tests.utils.identity import create_admin, create_organization, create_user


async def _assign(client, headers, user_id: str, role_type: str, scope: str, entity: str | None = None):
    body = {"userId": user_id, "roleType": role_type, "scope": scope, "scopeEntityId": entity}
    return await client.post("/v1/roles/assign", json=body, headers=headers)


@pytest.mark.asyncio
async def test_super_admin_assigns_and_permissions_follow() -> None:
    # A grant shows up in the permission view and the target's audit trail.
    org_id = await create_organization()
    admin = await create_admin()
    target = await create_user()
    headers = await session_headers(admin)
    async with api_client() as client:
        assigned = await _assign(client, headers, target, "client_admin", "organization", org_id)
        in_org = await client.get(f"/v1/roles/permissions/{target}?organizationId={org_id}", headers=headers)
        unbound = await client.get(f"/v1/roles/permissions/{target}", headers=headers)
    assert assigned.status_code == 201
    data = assigned.json()["data"]
    assert (data["roleType"], data["scope"], data["scopeEntityId"]) == ("client_admin", "organization", org_id)
    assert data["grantedBy"] == admin
    assert data["active"] is True
    assert in_org.json()["data"]["roles"] == ["client_admin"]
    assert "users:create" in in_org.json()["data"]["permissions"]
    assert unbound.json()["data"]["permissions"] == []
    assert "role_assigned" in await subject_actions(target)


@pytest.mark.asyncio
async def test_revocation_is_visible_on_the_next_request() -> None:
    # The permission cache never outlives a role change.
    org_id = await create_organization()
    admin = await create_admin()
    target = await create_user()
    headers = await session_headers(admin)
    async with api_client() as client:
        assigned = await _assign(client, headers, target, "client_hr", "organization", org_id)
        url = f"/v1/roles/permissions/{target}?organizationId={org_id}"
        before = await client.get(url, headers=headers)
        removed = await client.delete(f"/v1/roles/{assigned.json()['data']['id']}", headers=headers)
        after = await client.get(url, headers=headers)
    assert "users:update" in before.json()["data"]["permissions"]
    assert removed.json()["data"] == {"id": assigned.json()["data"]["id"], "removed": True}
    assert after.json()["data"]["permissions"] == []
    assert "role_removed" in await subject_actions(target)


@pytest.mark.asyncio
async def test_client_admin_is_confined_to_their_organization() -> None:
    # Organization admins cannot escalate or reach other tenants.
    org_a = await create_organization("A")
    org_b = await create_organization("B")
    client_admin = await create_admin("client_admin", org_a)
    target = await create_user()
    headers = await session_headers(client_admin, organization_id=org_a)
    async with api_client() as client:
        ok = await _assign(client, headers, target, "client_recruiter", "organization", org_a)
        escalate = await _assign(client, headers, target, "super_admin", "global")
        cross_tenant = await _assign(client, headers, target, "client_recruiter", "organization", org_b)
    assert ok.status_code == 201
    assert escalate.status_code == 403
    assert cross_tenant.status_code == 403


@pytest.mark.asyncio
async def test_client_admin_session_outside_their_organization_has_no_admin_role() -> None:
    # Organization roles only count in sessions bound to that organization.
    org_id = await create_organization()
    client_admin = await create_admin("client_admin", org_id)
    target = await create_user()
    async with api_client() as client:
        response = await client.get(f"/v1/roles/user/{target}", headers=await session_headers(client_admin))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_non_admins_and_services_cannot_manage_roles() -> None:
    # Role administration requires an administrative role.
    hr = await create_user(roles=[("internal_hr", None)])
    target = await create_user()
    async with api_client() as client:
        by_hr = await _assign(client, await session_headers(hr), target, "candidate", "individual")
        by_service = await client.get(f"/v1/roles/user/{target}", headers=await service_headers(["read:*"]))
    assert by_hr.status_code == 403
    assert by_service.status_code == 403


@pytest.mark.asyncio
async def test_invalid_grants_are_rejected() -> None:
    # Duplicates conflict; legacy names and scope mismatches are bad requests.
    org_id = await create_organization()
    admin = await create_admin()
    target = await create_user()
    headers = await session_headers(admin)
    async with api_client() as client:
        first = await _assign(client, headers, target, "client_finance", "organization", org_id)
        duplicate = await _assign(client, headers, target, "client_finance", "organization", org_id)
        legacy = await _assign(client, headers, target, "admin", "organization", org_id)
        mismatch = await _assign(client, headers, target, "client_finance", "global")
        missing_org = await _assign(client, headers, target, "client_finance", "organization", "nope")
    assert first.status_code == 201
    assert duplicate.status_code == 409
    assert error_code(legacy) == "ROLE_INVALID"
    assert error_code(mismatch) == "ROLE_SCOPE_MISMATCH"
    assert missing_org.status_code == 404


@pytest.mark.asyncio
async def test_update_expiry_and_list_assignments() -> None:
    # Expiring a grant in the past deactivates it immediately.
    admin = await create_admin()
    target = await create_user()
    headers = await session_headers(admin)
    past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
    async with api_client() as client:
        assigned = await _assign(client, headers, target, "internal_marketing", "global")
        assignment_id = assigned.json()["data"]["id"]
        updated = await client.put(f"/v1/roles/{assignment_id}", json={"expiresAt": past}, headers=headers)
        listing = await client.get(f"/v1/roles/user/{target}", headers=headers)
        permissions = await client.get(f"/v1/roles/permissions/{target}", headers=headers)
        missing = await client.put("/v1/roles/nope", json={"expiresAt": None}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["data"]["active"] is False
    items = listing.json()["data"]["items"]
    assert [(item["roleType"], item["active"]) for item in items] == [("internal_marketing", False)]
    assert permissions.json()["data"]["permissions"] == []
    assert missing.status_code == 404
    assert "role_updated" in await subject_actions(target)
