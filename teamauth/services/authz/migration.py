from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.errors import InvalidRoleError
from teamauth.domain.models import RoleAssignment, User
from teamauth.persistence.repos import roles as roles_repo
from teamauth.services.authz.roles import ROLE_DEFINITIONS, SCOPE_ORGANIZATION, migrate_legacy_role


logger = logging.getLogger(__name__)

LEGACY_PROVENANCE = "legacy_migration"


@dataclass
class MigrationReport:
    migrated: int = 0
    merged: int = 0
    skipped: list[dict[str, str | None]] = field(default_factory=list)
    users: set[str] = field(default_factory=set)


async def migrate_legacy_assignments(session: AsyncSession, *, dry_run: bool = False) -> MigrationReport:
    """Rewrite assignments still carrying legacy role or scope strings.

    Rows that map onto a grant the user already holds are merged away; rows
    that cannot be expressed canonically (unknown role, organization role
    without an organization) are reported and left untouched. The caller
    commits, or rolls back for a dry run.
    """
    report = MigrationReport()
    rows = (
        await session.execute(
            select(RoleAssignment).order_by(RoleAssignment.created_at.asc(), RoleAssignment.id.asc())
        )
    ).scalars().all()
    for row in rows:
        definition = ROLE_DEFINITIONS.get(row.role_type)
        if definition is not None and row.scope == definition.scope:
            continue
        try:
            role_type, scope = migrate_legacy_role(row.role_type, row.scope)
        except InvalidRoleError as exc:
            report.skipped.append({"id": row.id, "role_type": row.role_type, "reason": exc.message})
            continue
        if scope == SCOPE_ORGANIZATION and not row.scope_entity_id:
            report.skipped.append({"id": row.id, "role_type": row.role_type, "reason": "missing organization"})
            continue
        entity_id = row.scope_entity_id if scope == SCOPE_ORGANIZATION else None
        existing = await roles_repo.find_assignment(
            session, user_id=row.user_id, role_type=role_type, scope_entity_id=entity_id
        )
        report.users.add(row.user_id)
        if existing is not None and existing.id != row.id:
            report.merged += 1
            if not dry_run:
                await session.delete(row)
            continue
        report.migrated += 1
        if not dry_run:
            row.role_type = role_type
            row.scope = scope
            row.scope_entity_id = entity_id
    if dry_run:
        return report
    await session.flush()
    for user_id in sorted(report.users):
        await roles_repo.bump_role_version(session, user_id)
        user = await session.get(User, user_id)
        if user is not None and user.provenance is None:
            user.provenance = LEGACY_PROVENANCE
    await session.flush()
    logger.info(
        "legacy_roles_migrated migrated=%s merged=%s skipped=%s",
        report.migrated,
        report.merged,
        len(report.skipped),
    )
    return report
