from __future__ import annotations

import argparse
import asyncio
import sys

from teamauth.persistence.db import SessionLocal
from teamauth.services.audit import record_event
from teamauth.services.authz.migration import migrate_legacy_assignments


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rewrite legacy role assignments onto the canonical vocabulary")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    return parser


async def _migrate(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        report = await migrate_legacy_assignments(session, dry_run=args.dry_run)
        if args.dry_run:
            await session.rollback()
        else:
            await record_event(
                session=session,
                action="legacy_roles_migrated",
                actor_user_id=None,
                actor_role="system",
                entity_type="role_assignment",
                payload={
                    "migrated": report.migrated,
                    "merged": report.merged,
                    "skipped": len(report.skipped),
                    "users": len(report.users),
                },
            )
            await session.commit()

    mode = "dry_run" if args.dry_run else "applied"
    print(f"mode={mode} migrated={report.migrated} merged={report.merged} skipped={len(report.skipped)}")
    for item in report.skipped:
        print(f"  skipped id={item['id']} role_type={item['role_type']} reason={item['reason']}")
    # Leftovers mean legacy strings are still stored and would be rejected at runtime.
    return 2 if report.skipped else 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_migrate(args))
    except Exception as exc:  # noqa: BLE001 - surface migration failures clearly
        print(f"migrate_legacy_roles failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
