from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select, update

from peerlink.core.errors import IdentityUnavailableError, VerificationNotConfiguredError
from peerlink.domain.models import ChannelLink, User
from peerlink.persistence.db import Database
from peerlink.persistence.repos import identity as identity_repo
from peerlink.services.auth.tokens import LocalSignatureVerifier
from peerlink.services.identity import IdentityResolver
from peerlink.services.scope import resolve_scope
from peerlink.tests.utils.tokens import TEST_JWT_SECRET, mint_token as _token


@pytest.fixture
def resolver(make_resolver) -> IdentityResolver:
    return make_resolver(LocalSignatureVerifier(TEST_JWT_SECRET))


async def _count(db: Database, model) -> int:
    async with db.session() as session:
        return int(await session.scalar(select(func.count()).select_from(model)))


@pytest.mark.asyncio
async def test_lookup_of_unknown_peer_creates_nothing(resolver, db) -> None:
    assert await resolver.lookup("telegram", "777") is None
    assert await _count(db, User) == 0
    assert await _count(db, ChannelLink) == 0


@pytest.mark.asyncio
async def test_register_then_register_again_updates_name(resolver, db) -> None:
    first = await resolver.register("web", "sess-9", "Bo")
    assert first.created is True
    assert first.identity.verified is False
    assert first.identity.display_name == "Bo"

    second = await resolver.register("web", "sess-9", "Bob", "Stone")
    assert second.created is False
    assert second.identity.user_id == first.identity.user_id
    assert (second.identity.first_name, second.identity.last_name) == ("Bob", "Stone")
    assert await _count(db, User) == 1
    assert await _count(db, ChannelLink) == 1


@pytest.mark.asyncio
async def test_register_requires_first_name(resolver) -> None:
    with pytest.raises(ValueError):
        await resolver.register("web", "sess-9", "   ")


@pytest.mark.asyncio
async def test_cross_channel_merge_scenario(resolver, db) -> None:
    # WhatsApp registers, verifies, then the web session verifies with the same account.
    registered = await resolver.register("whatsapp", "+15551230000", "Ana", "Lopez")
    assert resolve_scope(registered.identity).scope_key == registered.identity.user_id

    upgraded = await resolver.verify("whatsapp", "+15551230000", _token("ext-42"))
    assert upgraded.status == "upgraded"
    assert upgraded.identity.user_id == registered.identity.user_id
    assert upgraded.identity.external_id == "ext-42"

    linked = await resolver.verify("web", "sess-9", _token("ext-42"))
    assert linked.status == "linked"
    assert linked.identity.user_id == registered.identity.user_id
    assert [(c.channel, c.peer_id) for c in linked.channels] == [
        ("whatsapp", "+15551230000"),
        ("web", "sess-9"),
    ]

    whatsapp = await resolver.lookup("whatsapp", "+15551230000")
    web = await resolver.lookup("web", "sess-9")
    assert resolve_scope(whatsapp).scope_key == resolve_scope(web).scope_key == "ext-42"
    assert web.display_name == "Ana Lopez"
    assert await _count(db, User) == 1
    assert await _count(db, ChannelLink) == 2


@pytest.mark.asyncio
async def test_verify_is_idempotent(resolver, db) -> None:
    token = _token("ext-42", given_name="Ana", family_name="Lopez")
    created = await resolver.verify("telegram", "777", token)
    assert created.status == "created"
    assert created.identity.first_name == "Ana"

    again = await resolver.verify("telegram", "777", token)
    assert again.status == "already_verified"
    assert again.identity.user_id == created.identity.user_id
    assert await _count(db, User) == 1
    assert await _count(db, ChannelLink) == 1


@pytest.mark.asyncio
async def test_rejected_token_changes_nothing(resolver, db) -> None:
    forged = _token("ext-42", secret="some-other-secret-0123456789abcdef")
    result = await resolver.verify("telegram", "777", forged)
    assert result.status == "rejected"
    assert result.ok is False
    assert await _count(db, User) == 0


@pytest.mark.asyncio
async def test_verified_owner_absorbs_channel_only_peer(resolver, db) -> None:
    # The registered web user is left behind without its link; the peer joins the verified user.
    channel_only = await resolver.register("web", "sess-9", "Bo")
    owner = await resolver.verify("whatsapp", "+15551230000", _token("ext-42"))
    assert owner.status == "created"

    merged = await resolver.verify("web", "sess-9", _token("ext-42"))
    assert merged.status == "linked"
    assert merged.identity.user_id == owner.identity.user_id
    assert await resolver.list_channels(channel_only.identity.user_id) == []
    assert await _count(db, User) == 2
    assert await _count(db, ChannelLink) == 2


@pytest.mark.asyncio
async def test_new_external_id_never_overwrites_existing_one(resolver, db) -> None:
    first = await resolver.verify("telegram", "777", _token("ext-1"))
    second = await resolver.verify("telegram", "777", _token("ext-2"))
    assert second.status == "created"
    assert second.identity.user_id != first.identity.user_id
    assert second.identity.external_id == "ext-2"
    async with db.session() as session:
        first_user = await session.get(User, first.identity.user_id)
    assert first_user.external_id == "ext-1"


@pytest.mark.asyncio
async def test_concurrent_verify_of_same_subject_yields_one_owner(resolver, db) -> None:
    whatsapp = await resolver.register("whatsapp", "+15551230000", "Ana")
    web = await resolver.register("web", "sess-9", "Ana")

    results = await asyncio.gather(
        resolver.verify("whatsapp", "+15551230000", _token("ext-42")),
        resolver.verify("web", "sess-9", _token("ext-42")),
    )

    assert sorted(result.status for result in results) == ["linked", "upgraded"]
    owner_ids = {result.identity.user_id for result in results}
    assert len(owner_ids) == 1
    assert owner_ids <= {whatsapp.identity.user_id, web.identity.user_id}
    async with db.session() as session:
        owners = (await session.scalars(select(User).where(User.external_id == "ext-42"))).all()
    assert [owner.id for owner in owners] == list(owner_ids)
    channels = await resolver.list_channels(owners[0].id)
    assert {(c.channel, c.peer_id) for c in channels} == {("whatsapp", "+15551230000"), ("web", "sess-9")}


def _claim_external_id_first(
    monkeypatch, db: Database, *, claim_user_id: str, claim_external_id: str
) -> None:
    # Another writer assigns an external_id after our reads but before our update.
    real_set_external_id = identity_repo.set_external_id

    async def _interleaved(session, *, user_id: str, external_id: str) -> bool:
        monkeypatch.setattr(identity_repo, "set_external_id", real_set_external_id)
        async with db.session() as other:
            await other.execute(
                update(User).where(User.id == claim_user_id).values(external_id=claim_external_id)
            )
            await other.commit()
        return await real_set_external_id(session, user_id=user_id, external_id=external_id)

    monkeypatch.setattr(identity_repo, "set_external_id", _interleaved)


@pytest.mark.asyncio
async def test_verify_relinks_when_another_user_claims_subject_first(resolver, db, monkeypatch) -> None:
    whatsapp = await resolver.register("whatsapp", "+15551230000", "Ana")
    web = await resolver.register("web", "sess-9", "Ana")
    _claim_external_id_first(
        monkeypatch, db, claim_user_id=web.identity.user_id, claim_external_id="ext-42"
    )

    result = await resolver.verify("whatsapp", "+15551230000", _token("ext-42"))

    assert result.status == "linked"
    assert result.identity.user_id == web.identity.user_id
    assert await resolver.list_channels(whatsapp.identity.user_id) == []
    async with db.session() as session:
        claimed = await session.scalar(
            select(func.count()).select_from(User).where(User.external_id == "ext-42")
        )
    assert claimed == 1


@pytest.mark.asyncio
async def test_verify_creates_user_when_own_user_was_verified_meanwhile(resolver, db, monkeypatch) -> None:
    registered = await resolver.register("telegram", "777", "Bo")
    user_id = registered.identity.user_id
    _claim_external_id_first(monkeypatch, db, claim_user_id=user_id, claim_external_id="ext-other")

    result = await resolver.verify("telegram", "777", _token("ext-42"))

    assert result.status == "created"
    assert result.identity.user_id != user_id
    assert result.identity.external_id == "ext-42"
    async with db.session() as session:
        previous = await session.get(User, user_id)
    assert previous.external_id == "ext-other"
    assert await resolver.list_channels(user_id) == []


@pytest.mark.asyncio
async def test_insert_verified_user_returns_existing_winner(db) -> None:
    await db.ensure_ready()
    async with db.session() as session:
        winner, created = await identity_repo.insert_verified_user(
            session, external_id="ext-42", first_name="Ana", last_name=None
        )
        await session.commit()
    assert created is True

    async with db.session() as session:
        again, created_again = await identity_repo.insert_verified_user(
            session, external_id="ext-42", first_name="Other", last_name="Name"
        )
        await session.commit()
    assert created_again is False
    assert again.id == winner.id
    assert again.first_name == "Ana"
    assert await _count(db, User) == 1


@pytest.mark.asyncio
async def test_verify_without_strategy_is_not_configured(make_resolver) -> None:
    resolver = make_resolver(None)
    assert resolver.verification_enabled is False
    with pytest.raises(VerificationNotConfiguredError):
        await resolver.verify("web", "sess-9", _token("ext-42"))


@pytest.mark.asyncio
async def test_unreachable_store_is_reported_and_cached(tmp_path, settings) -> None:
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/peerlink.db", failure_ttl_s=30)
    resolver = IdentityResolver(db, None, settings=settings)
    try:
        with pytest.raises(IdentityUnavailableError):
            await resolver.lookup("web", "sess-9")
        with pytest.raises(IdentityUnavailableError):
            await resolver.register("web", "sess-9", "Bo")
        assert db.gate.attempts == 1
    finally:
        await db.dispose()
