from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from teamauth.core.errors import (
    InvalidAuthorizationRequestError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRedirectError,
)
from teamauth.domain.models import AuthorizationCode
from teamauth.persistence.db import SessionLocal
from teamauth.services.auth import authorization_codes
from teamauth.services.auth.authorization_codes import pkce_challenge
from teamauth.services.auth.service_credentials import create_service_credential
from teamauth.tests.utils.auth import create_service_client
from teamauth.tests.utils.identity import create_user

CALLBACK = "https://hris.teamified.com/callback"
VERIFIER = "v" * 64


async def _issue(client_id: str, user_id: str, *, challenge: str | None = None, ttl_s: int = 60) -> str:
    async with SessionLocal() as session:
        client = await authorization_codes.registered_client(session, client_id, CALLBACK)
        raw_code = await authorization_codes.issue_code(
            session,
            client=client,
            user_id=user_id,
            redirect_uri=CALLBACK,
            organization_id=None,
            code_challenge=challenge,
            code_challenge_method="S256" if challenge else None,
            ttl_s=ttl_s,
        )
        await session.commit()
    return raw_code


def test_pkce_challenge_matches_the_rfc_example() -> None:
    # RFC 7636 appendix B.
    assert pkce_challenge("dBjftJeZ4CVP-mJ0kq7eeFEuRJLx9Yx2PDvXyMDvjFo") == (
        "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGjSstw-cM"
    )


@pytest.mark.asyncio
async def test_redirect_uris_must_be_registered_exactly() -> None:
    # Prefixes and other paths on the same host do not match.
    client_id, _secret = await create_service_client([], name="hris", redirect_uris=[CALLBACK])
    async with SessionLocal() as session:
        assert (await authorization_codes.registered_client(session, client_id, CALLBACK)).client_id == client_id
        for candidate in (f"{CALLBACK}/extra", "https://hris.teamified.com/", "https://evil.example/callback"):
            with pytest.raises(InvalidRedirectError):
                await authorization_codes.registered_client(session, client_id, candidate)
        with pytest.raises(InvalidClientError):
            await authorization_codes.registered_client(session, "tmci_missing", CALLBACK)


@pytest.mark.asyncio
async def test_registration_rejects_unsafe_redirect_uris() -> None:
    # Plain http is only accepted for local development hosts.
    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await create_service_credential(
                session, name="hris", scopes=[], redirect_uris=["http://hris.teamified.com/callback"]
            )
        with pytest.raises(ValueError):
            await create_service_credential(session, name="hris", scopes=[], redirect_uris=[f"{CALLBACK}#frag"])
        credential, _secret = await create_service_credential(
            session, name="hris", scopes=[], redirect_uris=["http://localhost:3000/callback", CALLBACK, CALLBACK]
        )
    assert credential.redirect_uris == ["http://localhost:3000/callback", CALLBACK]


@pytest.mark.asyncio
async def test_codes_are_single_use_and_stored_hashed() -> None:
    # The second redemption fails even with the correct verifier.
    client_id, _secret = await create_service_client([], name="hris", redirect_uris=[CALLBACK])
    user_id = await create_user()
    raw_code = await _issue(client_id, user_id, challenge=pkce_challenge(VERIFIER))
    assert raw_code.startswith("tmac_")
    async with SessionLocal() as session:
        stored = (await session.execute(select(AuthorizationCode.code_hash))).scalars().all()
        assert raw_code not in stored
        redeemed = await authorization_codes.redeem_code(
            session, raw_code=raw_code, client_id=client_id, redirect_uri=CALLBACK, code_verifier=VERIFIER
        )
        assert redeemed.code.user_id == user_id
        with pytest.raises(InvalidGrantError):
            await authorization_codes.redeem_code(
                session, raw_code=raw_code, client_id=client_id, redirect_uri=CALLBACK, code_verifier=VERIFIER
            )


@pytest.mark.asyncio
async def test_binding_failures_still_spend_the_code() -> None:
    # A wrong verifier burns the code so it cannot be guessed at repeatedly.
    client_id, _secret = await create_service_client([], name="hris", redirect_uris=[CALLBACK])
    user_id = await create_user()
    raw_code = await _issue(client_id, user_id, challenge=pkce_challenge(VERIFIER))
    async with SessionLocal() as session:
        with pytest.raises(InvalidGrantError):
            await authorization_codes.redeem_code(
                session, raw_code=raw_code, client_id=client_id, redirect_uri=CALLBACK, code_verifier="w" * 64
            )
        await session.rollback()
    async with SessionLocal() as session:
        with pytest.raises(InvalidGrantError):
            await authorization_codes.redeem_code(
                session, raw_code=raw_code, client_id=client_id, redirect_uri=CALLBACK, code_verifier=VERIFIER
            )


@pytest.mark.asyncio
async def test_codes_without_pkce_need_the_client_secret() -> None:
    # Confidential clients authenticate the exchange with their secret.
    client_id, secret = await create_service_client([], name="hris", redirect_uris=[CALLBACK])
    user_id = await create_user()
    bare = await _issue(client_id, user_id)
    with_secret = await _issue(client_id, user_id)
    async with SessionLocal() as session:
        with pytest.raises(InvalidClientError):
            await authorization_codes.redeem_code(session, raw_code=bare, client_id=client_id, redirect_uri=CALLBACK)
        redeemed = await authorization_codes.redeem_code(
            session, raw_code=with_secret, client_id=client_id, redirect_uri=CALLBACK, client_secret=secret
        )
    assert redeemed.client.client_id == client_id


@pytest.mark.asyncio
async def test_expired_codes_are_rejected_and_pruned() -> None:
    client_id, _secret = await create_service_client([], name="hris", redirect_uris=[CALLBACK])
    user_id = await create_user()
    raw_code = await _issue(client_id, user_id, challenge=pkce_challenge(VERIFIER))
    async with SessionLocal() as session:
        code = (await session.execute(select(AuthorizationCode))).scalar_one()
        code.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await session.commit()
    async with SessionLocal() as session:
        with pytest.raises(InvalidGrantError):
            await authorization_codes.redeem_code(
                session, raw_code=raw_code, client_id=client_id, redirect_uri=CALLBACK, code_verifier=VERIFIER
            )
        assert await authorization_codes.prune_authorization_codes(session) == 0
        removed = await authorization_codes.prune_authorization_codes(
            session, now=datetime.now(timezone.utc) + timedelta(days=2)
        )
        await session.commit()
    assert removed == 1


@pytest.mark.asyncio
async def test_only_s256_challenges_are_accepted() -> None:
    client_id, _secret = await create_service_client([], name="hris", redirect_uris=[CALLBACK])
    user_id = await create_user()
    async with SessionLocal() as session:
        client = await authorization_codes.registered_client(session, client_id, CALLBACK)
        with pytest.raises(InvalidAuthorizationRequestError):
            await authorization_codes.issue_code(
                session,
                client=client,
                user_id=user_id,
                redirect_uri=CALLBACK,
                organization_id=None,
                code_challenge=VERIFIER,
                code_challenge_method="plain",
                ttl_s=60,
            )
        with pytest.raises(InvalidAuthorizationRequestError):
            await authorization_codes.issue_code(
                session,
                client=client,
                user_id=user_id,
                redirect_uri=CALLBACK,
                organization_id=None,
                code_challenge="short",
                code_challenge_method="S256",
                ttl_s=60,
            )
