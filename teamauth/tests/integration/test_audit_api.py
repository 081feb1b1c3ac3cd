from __future__ import annotations

import pytest

from teamauth.services.audit import record_event
from teamauth.tests.utils.api import api_client, error_code
from teamauth.tests.utils.auth import service_headers, session_headers
from teamauth.tests.utils.identity import create_user


async def _seed(user_id: str, actions: list[str]) -> None:
    # Oldest first, one entry per action.
    for action in actions:
        await record_event(action=action, actor_user_id=user_id, best_effort=False)


@pytest.mark.asyncio
async def test_users_page_through_their_own_history() -> None:
    # Keyset pages come back newest first and end without a cursor.
    me = await create_user()
    await _seed(me, ["a", "b", "c", "d", "e"])
    headers = await session_headers(me)
    async with api_client() as client:
        first = await client.get(f"/v1/audit/{me}?limit=2", headers=headers)
        cursor = first.json()["data"]["nextCursor"]
        second = await client.get(f"/v1/audit/{me}", params={"limit": 2, "cursor": cursor}, headers=headers)
        third = await client.get(
            f"/v1/audit/{me}",
            params={"limit": 2, "cursor": second.json()["data"]["nextCursor"]},
            headers=headers,
        )
    assert [item["action"] for item in first.json()["data"]["items"]] == ["e", "d"]
    assert first.json()["data"]["hasMore"] is True
    assert [item["action"] for item in second.json()["data"]["items"]] == ["c", "b"]
    assert [item["action"] for item in third.json()["data"]["items"]] == ["a"]
    assert third.json()["data"]["hasMore"] is False
    assert third.json()["data"]["nextCursor"] is None


@pytest.mark.asyncio
async def test_consolidated_view_counts_adjacent_runs() -> None:
    # login x3, profile update, login reads as three groups.
    me = await create_user()
    await _seed(me, ["login_success", "login_success", "login_success", "user_profile_updated", "login_success"])
    async with api_client() as client:
        response = await client.get(f"/v1/audit/{me}?consolidate=true", headers=await session_headers(me))
    items = response.json()["data"]["items"]
    assert [(item["action"], item["count"]) for item in items] == [
        ("login_success", 1),
        ("user_profile_updated", 1),
        ("login_success", 3),
    ]


@pytest.mark.asyncio
async def test_history_access_control() -> None:
    # Other users need audit:read; services need read:audit.
    me = await create_user()
    stranger = await create_user()
    hr = await create_user(roles=[("internal_hr", None)])
    await _seed(me, ["login_success"])
    async with api_client() as client:
        by_stranger = await client.get(f"/v1/audit/{me}", headers=await session_headers(stranger))
        by_hr = await client.get(f"/v1/audit/{me}", headers=await session_headers(hr))
        by_reader = await client.get(f"/v1/audit/{me}", headers=await service_headers(["read:audit"]))
        by_wrong_scope = await client.get(f"/v1/audit/{me}", headers=await service_headers(["read:users"]))
    assert by_stranger.status_code == 403
    assert by_hr.status_code == 200
    assert by_reader.status_code == 200
    assert [item["action"] for item in by_reader.json()["data"]["items"]] == ["login_success"]
    assert by_wrong_scope.status_code == 403


@pytest.mark.asyncio
async def test_foreign_or_forged_cursors_are_rejected() -> None:
    # A cursor from one timeline cannot be replayed on another.
    me = await create_user()
    hr = await create_user(roles=[("internal_hr", None)])
    await _seed(me, ["a", "b", "c"])
    headers = await session_headers(hr)
    async with api_client() as client:
        page = await client.get(f"/v1/audit/{me}?limit=1", headers=headers)
        foreign = await client.get(
            f"/v1/audit/{hr}", params={"cursor": page.json()["data"]["nextCursor"]}, headers=headers
        )
        forged = await client.get(f"/v1/audit/{me}", params={"cursor": "abc.def"}, headers=headers)
    assert foreign.status_code == 400
    assert error_code(foreign) == "INVALID_CURSOR"
    assert error_code(forged) == "INVALID_CURSOR"


@pytest.mark.asyncio
async def test_denials_are_recorded_on_the_actor_timeline() -> None:
    # A refused request leaves an access_denied entry for the caller.
    me = await create_user()
    stranger = await create_user()
    async with api_client() as client:
        await client.get(f"/v1/audit/{me}", headers=await session_headers(stranger))
        history = await client.get(f"/v1/audit/{stranger}", headers=await session_headers(stranger))
    items = history.json()["data"]["items"]
    assert items[0]["action"] == "access_denied"
    assert items[0]["outcome"] == "failure"
    assert items[0]["entityId"] == f"/v1/audit/{me}"
