from __future__ import annotations

import argparse
import asyncio
import sys

from teamauth.persistence.db import SessionLocal
from teamauth.services.audit import record_event
from teamauth.services.auth.service_credentials import create_service_credential


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a client-credentials service credential")
    parser.add_argument("--name", required=True, help="Client name recorded on tokens and audit entries")
    parser.add_argument(
        "--scope",
        action="append",
        required=True,
        help="Allowed read scope, e.g. read:users or read:*; repeat for more",
    )
    parser.add_argument(
        "--redirect-uri",
        action="append",
        default=[],
        help="Redirect URI allowed for the authorization-code hand-off; repeat for more",
    )
    return parser


async def _create(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        credential, raw_secret = await create_service_credential(
            session, name=args.name, scopes=args.scope, redirect_uris=args.redirect_uri
        )
        await record_event(
            session=session,
            action="service_credential_created",
            actor_user_id=None,
            actor_role="system",
            entity_type="service_credential",
            entity_id=credential.client_id,
            client_name=credential.name,
            payload={
                "scopes": list(credential.allowed_scopes),
                "redirect_uris": list(credential.redirect_uris),
                "key_prefix": credential.secret_prefix,
            },
            commit=True,
            best_effort=False,
        )

    # The secret is stored hashed; this is the only time it is shown.
    print("Service credential created:")
    print(f"  client_id: {credential.client_id}")
    print(f"  scopes: {' '.join(credential.allowed_scopes)}")
    if credential.redirect_uris:
        print(f"  redirect_uris: {' '.join(credential.redirect_uris)}")
    print("  client_secret: ")
    print(f"    {raw_secret}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_service_credential failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
