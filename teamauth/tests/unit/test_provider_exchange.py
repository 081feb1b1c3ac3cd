from __future__ import annotations

import httpx
import pytest
from sqlalchemy import func, select

from teamauth.core.config import get_settings
from teamauth.core.errors import (
    AudienceMismatchError,
    ConflictError,
    ProviderUnavailableError,
    TokenExpiredError,
    TokenMalformedError,
)
from teamauth.domain.models import ProviderIdentity, RoleAssignment, User
from teamauth.persistence.db import SessionLocal
from teamauth.persistence.repos import identity as identity_repo
from teamauth.services import identity
from teamauth.services.auth import provider
from teamauth.services.auth.provider import ProviderVerifier, exchange_provider_token
from teamauth.tests.utils.auth import TEST_AUDIENCE, token_service
from teamauth.tests.utils.identity import create_organization, create_user, unique_email
from teamauth.tests.utils.provider import FakeProvider


async def _exchange(assertion: str, verifier: ProviderVerifier):
    async with SessionLocal() as session:
        result = await exchange_provider_token(
            session,
            assertion=assertion,
            verifier=verifier,
            token_service=token_service(),
            audience=TEST_AUDIENCE,
        )
        await session.commit()
        return result


async def _count(model) -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


@pytest.mark.asyncio
async def test_first_exchange_provisions_and_repeat_is_idempotent(monkeypatch) -> None:
    # The same provider identity yields exactly one user, however often it signs in.
    idp = FakeProvider()
    idp.install(monkeypatch)
    verifier = ProviderVerifier(get_settings())
    address = unique_email("new")
    first = await _exchange(idp.assertion(subject="sub-1", email=address, name="Ada Lovelace"), verifier)
    second = await _exchange(idp.assertion(subject="sub-1", email=address), verifier)
    assert first.created is True
    assert second.created is False
    assert first.user.id == second.user.id
    assert first.user.display_name == "Ada Lovelace"
    assert await _count(User) == 1
    assert await _count(ProviderIdentity) == 1
    async with SessionLocal() as session:
        linked, owner = await identity.resolve_email(session, address, require_verified=True)
    assert linked.is_primary and owner.id == first.user.id
    claims = token_service().validate(first.credential.access_token, audience=TEST_AUDIENCE)
    assert claims.subject == first.user.id
    async with SessionLocal() as session:
        grants = list((await session.execute(select(RoleAssignment))).scalars().all())
    assert [(row.role_type, row.scope, row.granted_by) for row in grants] == [("candidate", "individual", None)]
    assert grants[0].user_id == first.user.id
    assert claims.roles == ("candidate",)


@pytest.mark.asyncio
async def test_exchange_binds_to_existing_verified_address(monkeypatch) -> None:
    # A known user signing in through the provider is not duplicated.
    idp = FakeProvider()
    idp.install(monkeypatch)
    address = unique_email("known")
    user_id = await create_user(email=address)
    result = await _exchange(idp.assertion(email=address), ProviderVerifier(get_settings()))
    assert result.created is False
    assert result.user.id == user_id
    assert await _count(User) == 1


@pytest.mark.asyncio
async def test_work_address_binds_the_session_organization(monkeypatch) -> None:
    # Signing in with a work email scopes the session to its organization.
    idp = FakeProvider()
    idp.install(monkeypatch)
    org_id = await create_organization()
    address = unique_email("staff", "acme.com")
    await create_user(email=address, kind="work", organization_id=org_id, roles=[("client_hr", org_id)])
    result = await _exchange(idp.assertion(email=address), ProviderVerifier(get_settings()))
    assert result.credential.organization_id == org_id
    assert [item["role"] for item in result.credential.roles] == ["client_hr"]


@pytest.mark.asyncio
async def test_pending_address_on_another_account_conflicts(monkeypatch) -> None:
    # An unverified claim on the address must not capture the login.
    idp = FakeProvider()
    idp.install(monkeypatch)
    address = unique_email("pending")
    user_id = await create_user()
    async with SessionLocal() as session:
        await identity.link_email(session, user_id=user_id, address=address, kind="personal")
        await session.commit()
    with pytest.raises(ConflictError):
        await _exchange(idp.assertion(email=address), ProviderVerifier(get_settings()))


@pytest.mark.asyncio
async def test_assertion_validation_failures(monkeypatch) -> None:
    # Wrong audience, expiry, unverified email and foreign keys are all refused.
    idp = FakeProvider()
    idp.install(monkeypatch)
    verifier = ProviderVerifier(get_settings())
    address = unique_email()
    with pytest.raises(AudienceMismatchError):
        await verifier.validate(idp.assertion(email=address, audience="someone-else"))
    with pytest.raises(TokenExpiredError):
        await verifier.validate(idp.assertion(email=address, expires_in=-3600))
    with pytest.raises(TokenMalformedError):
        await verifier.validate(idp.assertion(email=address, email_verified=False))
    with pytest.raises(TokenMalformedError):
        await verifier.validate(idp.assertion(email=address, issuer="https://evil.example.com"))
    impostor = FakeProvider()
    with pytest.raises(TokenMalformedError):
        await verifier.validate(impostor.assertion(email=address))
    assert await _count(User) == 0


@pytest.mark.asyncio
async def test_unknown_kid_triggers_one_refetch(monkeypatch) -> None:
    # Key rotation is picked up without waiting for the cache to expire.
    old = FakeProvider(kid="old")
    old.install(monkeypatch)
    verifier = ProviderVerifier(get_settings())
    await verifier.validate(old.assertion(email=unique_email()))
    rotated = FakeProvider(kid="new")
    rotated.install(monkeypatch)
    claims = await verifier.validate(rotated.assertion(email="rotated@example.com"))
    assert claims.email == "rotated@example.com"
    assert rotated.fetches == 1


@pytest.mark.asyncio
async def test_provider_outage_is_reported(monkeypatch) -> None:
    # Network failures surface as a 502-class error, not a credential error.
    async def _failing_fetch(jwks_url: str, timeout_s: float):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(provider, "_fetch_jwks", _failing_fetch)
    idp = FakeProvider()
    with pytest.raises(ProviderUnavailableError):
        await ProviderVerifier(get_settings()).validate(idp.assertion(email=unique_email()))


@pytest.mark.asyncio
async def test_provisioning_race_loser_resolves_the_winner(monkeypatch) -> None:
    # A competing insert between the lookup and the flush leaves one user and one grant.
    issuer = get_settings().provider_issuer
    address = unique_email("race")
    real_lookup = identity_repo.get_provider_identity
    winner: list[str] = []

    async def lookup_then_lose(session, *, issuer: str, subject: str):
        found = await real_lookup(session, issuer=issuer, subject=subject)
        if found is None and not winner:
            winner.append("")
            async with SessionLocal() as other:
                user, created = await identity.ensure_provider_user(
                    other, issuer=issuer, subject=subject, email=address, display_name="Winner"
                )
            assert created is True
            winner[0] = user.id
        return found

    monkeypatch.setattr(identity_repo, "get_provider_identity", lookup_then_lose)
    async with SessionLocal() as session:
        user, created = await identity.ensure_provider_user(
            session, issuer=issuer, subject="sub-race", email=address, display_name="Loser"
        )
    assert created is False
    assert user.id == winner[0]
    assert user.display_name == "Winner"
    assert await _count(User) == 1
    assert await _count(ProviderIdentity) == 1
    assert await _count(RoleAssignment) == 1
