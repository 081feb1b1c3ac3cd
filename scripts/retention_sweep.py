from __future__ import annotations

import asyncio

from teamauth.persistence.db import SessionLocal
from teamauth.services.auth.authorization_codes import prune_authorization_codes
from teamauth.services.auth.tokens import prune_refresh_sessions
from teamauth.services.authz.engine import prune_expired_assignments


async def sweep() -> None:
    # Expired grants, dead refresh families and stale codes are already inert; this reclaims the rows.
    async with SessionLocal() as session:
        assignments = await prune_expired_assignments(session)
        refresh_sessions = await prune_refresh_sessions(session)
        codes = await prune_authorization_codes(session)
        await session.commit()
        print(f"pruned_role_assignments={assignments}")
        print(f"pruned_refresh_sessions={refresh_sessions}")
        print(f"pruned_authorization_codes={codes}")


if __name__ == "__main__":
    asyncio.run(sweep())
