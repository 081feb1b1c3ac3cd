from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.domain.models import LinkedEmail, Organization, ProviderIdentity, RoleAssignment, User


async def get_user(session: AsyncSession, user_id: str) -> User | None:
    return await session.get(User, user_id)


async def get_user_for_update(session: AsyncSession, user_id: str) -> User | None:
    # Row lock serializes concurrent primary-email changes for one user.
    result = await session.execute(select(User).where(User.id == user_id).with_for_update())
    return result.scalar_one_or_none()


async def list_users(
    session: AsyncSession,
    *,
    status: str | None = None,
    organization_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[User]:
    stmt = select(User)
    if status:
        stmt = stmt.where(User.status == status)
    if organization_id is not None:
        # Members hold a verified work email or any grant in the organization.
        by_email = select(LinkedEmail.user_id).where(
            LinkedEmail.organization_id == organization_id,
            LinkedEmail.verified_at.is_not(None),
        )
        by_grant = select(RoleAssignment.user_id).where(RoleAssignment.scope_entity_id == organization_id)
        stmt = stmt.where(or_(User.id.in_(by_email), User.id.in_(by_grant)))
    stmt = stmt.order_by(User.created_at.asc(), User.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_organization(session: AsyncSession, organization_id: str) -> Organization | None:
    return await session.get(Organization, organization_id)


async def get_email_by_address(session: AsyncSession, normalized_address: str) -> LinkedEmail | None:
    # Addresses are stored normalized, so this is an exact unique-index lookup.
    result = await session.execute(
        select(LinkedEmail).where(LinkedEmail.address == normalized_address)
    )
    return result.scalar_one_or_none()


async def get_email_with_owner(
    session: AsyncSession, normalized_address: str
) -> tuple[LinkedEmail, User] | None:
    result = await session.execute(
        select(LinkedEmail, User)
        .join(User, User.id == LinkedEmail.user_id)
        .where(LinkedEmail.address == normalized_address)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def get_user_email(session: AsyncSession, *, user_id: str, email_id: str) -> LinkedEmail | None:
    result = await session.execute(
        select(LinkedEmail).where(LinkedEmail.id == email_id, LinkedEmail.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def list_user_emails(session: AsyncSession, user_id: str) -> list[LinkedEmail]:
    # Primary first, then in the order they were linked.
    result = await session.execute(
        select(LinkedEmail)
        .where(LinkedEmail.user_id == user_id)
        .order_by(LinkedEmail.is_primary.desc(), LinkedEmail.added_at.asc(), LinkedEmail.id.asc())
    )
    return list(result.scalars().all())


async def get_primary_email(session: AsyncSession, user_id: str) -> LinkedEmail | None:
    result = await session.execute(
        select(LinkedEmail).where(LinkedEmail.user_id == user_id, LinkedEmail.is_primary.is_(True))
    )
    return result.scalar_one_or_none()


async def get_email_by_verification_hash(session: AsyncSession, token_hash: str) -> LinkedEmail | None:
    result = await session.execute(
        select(LinkedEmail).where(LinkedEmail.verification_token_hash == token_hash)
    )
    return result.scalar_one_or_none()


async def get_provider_identity(
    session: AsyncSession, *, issuer: str, subject: str
) -> ProviderIdentity | None:
    result = await session.execute(
        select(ProviderIdentity).where(
            ProviderIdentity.issuer == issuer,
            ProviderIdentity.subject == subject,
        )
    )
    return result.scalar_one_or_none()
