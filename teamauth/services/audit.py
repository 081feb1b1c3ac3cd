from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any, Iterable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from teamauth.core.errors import CursorError
from teamauth.domain.models import AuditLogEntry
from teamauth.persistence.db import SessionLocal
from teamauth.persistence.repos import audit as audit_repo


logger = logging.getLogger(__name__)

# Any key containing one of these fragments, case-insensitively, has its value masked.
_REDACTED_FRAGMENTS = ("authorization", "token", "secret", "password", "assertion", "cookie")
REDACTED = "[REDACTED]"
_CURSOR_VERSION = 1


def _redacts(key: Any) -> bool:
    name = str(key).lower()
    return any(fragment in name for fragment in _REDACTED_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Copy an audit payload with credential-bearing values masked at any depth."""
    if isinstance(value, dict):
        return {str(key): REDACTED if _redacts(key) else sanitize_metadata(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Correlation fields for record_event; scripts pass None and get empty values.
    context: dict[str, str | None] = dict.fromkeys(("request_id", "ip_address", "user_agent"))
    if request is not None:
        context["request_id"] = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
        context["ip_address"] = request.client.host if request.client else None
        context["user_agent"] = request.headers.get("user-agent")
    return context


async def record_event(
    *,
    session: AsyncSession | None = None,
    action: str,
    actor_user_id: str | None,
    actor_role: str | None = None,
    subject_user_id: str | None = None,
    outcome: str = "success",
    entity_type: str | None = None,
    entity_id: str | None = None,
    client_name: str | None = None,
    payload: dict[str, Any] | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append one immutable audit entry.

    The entry lands on ``subject_user_id``'s timeline, defaulting to the actor.
    With ``session=None`` the entry is written in its own transaction so it
    survives a rollback of the caller's unit of work (failed logins, denials).
    Write failures are logged; with ``best_effort=False`` they are re-raised.
    """
    entry = AuditLogEntry(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        action=action,
        outcome=outcome,
        actor_user_id=actor_user_id,
        actor_role=actor_role,
        subject_user_id=subject_user_id or actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        client_name=client_name,
        changes_json=sanitize_metadata(payload or {}),
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    if session is None:
        async with SessionLocal() as own_session:
            await _persist(own_session, entry, commit=True, best_effort=best_effort)
        return
    await _persist(session, entry, commit=commit, best_effort=best_effort)


async def _persist(session: AsyncSession, entry: AuditLogEntry, *, commit: bool, best_effort: bool) -> None:
    try:
        session.add(entry)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        _log_write_failure(entry.action, entry.request_id, exc, best_effort)
        if not best_effort:
            raise


def _log_write_failure(action: str, request_id: str | None, exc: Exception, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level("audit_write_failed action=%s request_id=%s", action, request_id, exc_info=exc)


def encode_cursor(payload: dict[str, Any], secret: str) -> str:
    # Sign cursor payloads to prevent client-side tampering.
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    encoded = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{encoded}.{signature}"


def decode_cursor(token: str, secret: str) -> dict[str, Any]:
    # Verify cursor signatures and return the decoded payload.
    try:
        encoded, signature = token.split(".", 1)
    except ValueError as exc:
        raise CursorError("Invalid cursor format") from exc
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise CursorError("Invalid cursor encoding") from exc
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise CursorError("Invalid cursor signature")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CursorError("Invalid cursor payload") from exc
    if not isinstance(payload, dict):
        raise CursorError("Invalid cursor payload")
    return payload


@dataclass(frozen=True)
class AuditPage:
    entries: list[AuditLogEntry]
    next_cursor: str | None
    has_more: bool


async def query_history(
    session: AsyncSession,
    *,
    subject_user_id: str,
    page_size: int,
    cursor: str | None,
    secret: str,
) -> AuditPage:
    """Return one reverse-chronological page of a user's audit timeline.

    The cursor wraps the last returned id, so pages stay stable while new
    entries are appended. A cursor minted for another user is rejected.
    """
    before_id: int | None = None
    if cursor:
        payload = decode_cursor(cursor, secret)
        if payload.get("v") != _CURSOR_VERSION or payload.get("sub") != subject_user_id:
            raise CursorError("Cursor does not match this timeline")
        try:
            before_id = int(payload["before"])
        except (KeyError, TypeError, ValueError) as exc:
            raise CursorError("Invalid cursor payload") from exc

    # Fetch one extra row to learn whether another page exists.
    rows = await audit_repo.list_entries_for_subject(
        session,
        subject_user_id=subject_user_id,
        before_id=before_id,
        limit=page_size + 1,
    )
    has_more = len(rows) > page_size
    entries = rows[:page_size]
    next_cursor = None
    if has_more and entries:
        next_cursor = encode_cursor(
            {"v": _CURSOR_VERSION, "sub": subject_user_id, "before": entries[-1].id},
            secret,
        )
    return AuditPage(entries=entries, next_cursor=next_cursor, has_more=has_more)


@dataclass(frozen=True)
class ConsolidatedEntry:
    action: str
    count: int
    # Most recent entry of the run; its detail is what gets displayed.
    entry: Any


def _recency_key(entry: Any) -> tuple[datetime, int]:
    occurred_at = getattr(entry, "occurred_at", None) or datetime.min.replace(tzinfo=timezone.utc)
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return occurred_at, int(getattr(entry, "id", 0) or 0)


def consolidate(entries: Sequence[Any] | Iterable[Any]) -> list[ConsolidatedEntry]:
    """Collapse runs of immediately consecutive entries sharing an action.

    Order is preserved; an intervening different action always starts a new
    run. Works on any objects exposing ``action``, ``occurred_at`` and ``id``.
    """
    groups: list[ConsolidatedEntry] = []
    for entry in entries:
        if groups and groups[-1].action == entry.action:
            previous = groups[-1]
            latest = entry if _recency_key(entry) >= _recency_key(previous.entry) else previous.entry
            groups[-1] = ConsolidatedEntry(action=previous.action, count=previous.count + 1, entry=latest)
        else:
            groups.append(ConsolidatedEntry(action=entry.action, count=1, entry=entry))
    return groups
