from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.domain.models import AuditLogEntry


async def list_entries_for_subject(
    session: AsyncSession,
    *,
    subject_user_id: str,
    before_id: int | None = None,
    limit: int = 50,
) -> list[AuditLogEntry]:
    # Keyset page: newest first, strictly older than the cursor id.
    stmt = select(AuditLogEntry).where(AuditLogEntry.subject_user_id == subject_user_id)
    if before_id is not None:
        stmt = stmt.where(AuditLogEntry.id < before_id)
    stmt = stmt.order_by(AuditLogEntry.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_entries(
    session: AsyncSession,
    *,
    action: str | None = None,
    outcome: str | None = None,
    limit: int = 100,
) -> list[AuditLogEntry]:
    stmt = select(AuditLogEntry)
    if action:
        stmt = stmt.where(AuditLogEntry.action == action)
    if outcome:
        stmt = stmt.where(AuditLogEntry.outcome == outcome)
    stmt = stmt.order_by(AuditLogEntry.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
