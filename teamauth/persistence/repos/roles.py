from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.domain.models import RoleAssignment, User


async def list_active_assignments(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str | None,
    now: datetime,
) -> list[RoleAssignment]:
    # Expired grants are filtered here, not deleted; the retention sweep removes them.
    stmt = select(RoleAssignment).where(
        RoleAssignment.user_id == user_id,
        or_(RoleAssignment.expires_at.is_(None), RoleAssignment.expires_at > now),
    )
    if organization_id is None:
        stmt = stmt.where(RoleAssignment.scope_entity_id.is_(None))
    else:
        stmt = stmt.where(
            or_(
                RoleAssignment.scope_entity_id.is_(None),
                RoleAssignment.scope_entity_id == organization_id,
            )
        )
    stmt = stmt.order_by(RoleAssignment.created_at.asc(), RoleAssignment.id.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_user_assignments(session: AsyncSession, user_id: str) -> list[RoleAssignment]:
    # Administrative listing includes expired rows so operators can see them.
    result = await session.execute(
        select(RoleAssignment)
        .where(RoleAssignment.user_id == user_id)
        .order_by(RoleAssignment.created_at.asc(), RoleAssignment.id.asc())
    )
    return list(result.scalars().all())


async def get_assignment(session: AsyncSession, assignment_id: str) -> RoleAssignment | None:
    return await session.get(RoleAssignment, assignment_id)


async def find_assignment(
    session: AsyncSession,
    *,
    user_id: str,
    role_type: str,
    scope_entity_id: str | None,
) -> RoleAssignment | None:
    stmt = select(RoleAssignment).where(
        RoleAssignment.user_id == user_id,
        RoleAssignment.role_type == role_type,
    )
    if scope_entity_id is None:
        stmt = stmt.where(RoleAssignment.scope_entity_id.is_(None))
    else:
        stmt = stmt.where(RoleAssignment.scope_entity_id == scope_entity_id)
    result = await session.execute(stmt)
    return result.scalars().first()


async def get_role_version(session: AsyncSession, user_id: str) -> int | None:
    result = await session.execute(select(User.role_version).where(User.id == user_id))
    return result.scalar_one_or_none()


async def bump_role_version(session: AsyncSession, user_id: str) -> None:
    # Invalidate cached permission sets for this user across processes.
    await session.execute(
        update(User).where(User.id == user_id).values(role_version=User.role_version + 1)
    )


async def delete_expired_assignments(session: AsyncSession, *, cutoff: datetime) -> list[str]:
    # Return the owner of every deleted row so callers can bump role versions.
    result = await session.execute(
        select(RoleAssignment.user_id).where(
            RoleAssignment.expires_at.is_not(None),
            RoleAssignment.expires_at <= cutoff,
        )
    )
    user_ids = [row[0] for row in result.fetchall()]
    await session.execute(
        delete(RoleAssignment).where(
            RoleAssignment.expires_at.is_not(None),
            RoleAssignment.expires_at <= cutoff,
        ).execution_options(synchronize_session=False)
    )
    return user_ids
