from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from teamauth.core.errors import CursorError
from teamauth.persistence.db import SessionLocal
from teamauth.services.audit import (
    consolidate,
    decode_cursor,
    encode_cursor,
    query_history,
    record_event,
    sanitize_metadata,
)

SECRET = "cursor-test-secret"
_BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _entry(entry_id: int, action: str) -> SimpleNamespace:
    return SimpleNamespace(id=entry_id, action=action, occurred_at=_BASE + timedelta(minutes=entry_id))


def test_consolidate_folds_only_adjacent_runs() -> None:
    # An intervening action breaks the run.
    entries = [
        _entry(1, "login"),
        _entry(2, "login"),
        _entry(3, "login"),
        _entry(4, "profile_update"),
        _entry(5, "login"),
    ]
    groups = consolidate(entries)
    assert [(group.action, group.count) for group in groups] == [
        ("login", 3),
        ("profile_update", 1),
        ("login", 1),
    ]
    # The most recent entry of a run is the one displayed.
    assert groups[0].entry.id == 3


def test_consolidate_handles_empty_and_single_entries() -> None:
    # Degenerate inputs pass straight through.
    assert consolidate([]) == []
    only = consolidate([_entry(1, "logout")])
    assert [(group.action, group.count) for group in only] == [("logout", 1)]


def test_audit_metadata_redacts_credentials() -> None:
    # Tokens, secrets and passwords never reach the audit log.
    sanitized = sanitize_metadata(
        {
            "refresh_token": "tmrt_x",
            "client_secret": "tmcs_x",
            "password": "hunter2",
            "providerAssertion": "eyJ",
            "nested": [{"Authorization": "Bearer abc", "email": "a@example.com"}],
        }
    )
    assert sanitized["refresh_token"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["providerAssertion"] == "[REDACTED]"
    assert sanitized["nested"] == [{"Authorization": "[REDACTED]", "email": "a@example.com"}]


def test_cursor_signature_is_checked() -> None:
    # Tampered cursors are rejected rather than trusted.
    cursor = encode_cursor({"v": 1, "sub": "u1", "before": 10}, SECRET)
    assert decode_cursor(cursor, SECRET)["before"] == 10
    with pytest.raises(CursorError):
        decode_cursor(cursor, "another-secret")
    with pytest.raises(CursorError):
        decode_cursor("garbage", SECRET)


async def _record(user_id: str, action: str, **kwargs) -> None:
    await record_event(action=action, actor_user_id=user_id, best_effort=False, **kwargs)


@pytest.mark.asyncio
async def test_history_pages_newest_first_with_stable_cursors() -> None:
    # New entries appended between page fetches do not shift later pages.
    for index in range(5):
        await _record("user-a", f"action_{index}")
    await _record("user-b", "unrelated")
    async with SessionLocal() as session:
        first = await query_history(session, subject_user_id="user-a", page_size=2, cursor=None, secret=SECRET)
    assert [entry.action for entry in first.entries] == ["action_4", "action_3"]
    assert first.has_more is True

    await _record("user-a", "action_late")
    async with SessionLocal() as session:
        second = await query_history(
            session, subject_user_id="user-a", page_size=2, cursor=first.next_cursor, secret=SECRET
        )
        third = await query_history(
            session, subject_user_id="user-a", page_size=2, cursor=second.next_cursor, secret=SECRET
        )
    assert [entry.action for entry in second.entries] == ["action_2", "action_1"]
    assert [entry.action for entry in third.entries] == ["action_0"]
    assert third.has_more is False
    assert third.next_cursor is None


@pytest.mark.asyncio
async def test_cursor_is_bound_to_its_timeline() -> None:
    # A cursor minted for one user cannot page another user's history.
    for index in range(3):
        await _record("user-a", f"action_{index}")
    async with SessionLocal() as session:
        page = await query_history(session, subject_user_id="user-a", page_size=1, cursor=None, secret=SECRET)
        with pytest.raises(CursorError):
            await query_history(
                session, subject_user_id="user-b", page_size=1, cursor=page.next_cursor, secret=SECRET
            )


@pytest.mark.asyncio
async def test_entries_land_on_the_subject_timeline() -> None:
    # Admin actions appear in the affected user's history, payload redacted.
    await _record(
        "admin-1",
        "role_assigned",
        subject_user_id="user-a",
        actor_role="super_admin",
        payload={"role_type": "client_hr", "token": "secret"},
    )
    async with SessionLocal() as session:
        page = await query_history(session, subject_user_id="user-a", page_size=10, cursor=None, secret=SECRET)
        admin_page = await query_history(
            session, subject_user_id="admin-1", page_size=10, cursor=None, secret=SECRET
        )
    assert len(page.entries) == 1
    entry = page.entries[0]
    assert entry.actor_user_id == "admin-1"
    assert entry.actor_role == "super_admin"
    assert entry.changes_json == {"role_type": "client_hr", "token": "[REDACTED]"}
    assert admin_page.entries == []
