from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from teamauth.persistence.db import SessionLocal
from teamauth.services import identity
from teamauth.services.audit import record_event
from teamauth.services.authz import engine
from teamauth.services.authz.roles import SCOPE_GLOBAL


def _build_parser() -> argparse.ArgumentParser:
    # The first administrator has nobody to grant them a role, so the grant is a system grant.
    parser = argparse.ArgumentParser(description="Create the first super_admin user")
    parser.add_argument("--email", required=True, help="Primary email, linked as verified")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--password", default=None, help="Login password; prompted when omitted")
    return parser


async def _bootstrap(args: argparse.Namespace, password: str) -> int:
    async with SessionLocal() as session:
        user = await identity.provision_user(
            session,
            display_name=args.name,
            emails=[identity.EmailSpec(address=args.email, kind=identity.EMAIL_KIND_PERSONAL, verified=True)],
            password=password,
            provenance="bootstrap",
        )
        assignment = await engine.assign(
            session,
            target_user_id=user.id,
            role_type="super_admin",
            scope=SCOPE_GLOBAL,
            granted_by=None,
        )
        await record_event(
            session=session,
            action="role_assigned",
            actor_user_id=None,
            actor_role="system",
            subject_user_id=user.id,
            entity_type="role_assignment",
            entity_id=assignment.id,
            payload=engine.assignment_snapshot(assignment),
        )
        await session.commit()

    print("Administrator created:")
    print(f"  user_id: {user.id}")
    print(f"  email: {identity.normalize_email(args.email)}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    password = args.password or getpass.getpass("Password: ")
    try:
        return asyncio.run(_bootstrap(args, password))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"bootstrap_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
