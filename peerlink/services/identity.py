from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import logging
from typing import Awaitable, Callable, Literal, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from peerlink.core.config import Settings, get_settings
from peerlink.core.errors import IdentityUnavailableError, VerificationNotConfiguredError
from peerlink.persistence.db import Database
from peerlink.persistence.repos import identity as identity_repo
from peerlink.persistence.repos.identity import ResolvedIdentity
from peerlink.services.auth.tokens import TokenVerifier, VerifiedIdentity, verify_token


logger = logging.getLogger(__name__)

T = TypeVar("T")

VerifyStatus = Literal["rejected", "already_verified", "linked", "upgraded", "created"]


class _UpgradeLost(Exception):
    # The peer's user gained an external_id between our read and our update.
    pass


@dataclass(frozen=True)
class LinkedChannel:
    channel: str
    peer_id: str
    linked_at: datetime | None


@dataclass(frozen=True)
class RegisterResult:
    identity: ResolvedIdentity
    created: bool


@dataclass(frozen=True)
class VerifyResult:
    status: VerifyStatus
    identity: ResolvedIdentity | None = None
    verified: VerifiedIdentity | None = None
    channels: list[LinkedChannel] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != "rejected"


class IdentityResolver:
    """Answer "who is this peer" and drive register/verify/merge transitions.

    Every store operation runs behind the database ready gate and a bounded
    timeout; store faults surface as ``IdentityUnavailableError``. Rejected
    credentials are a normal ``VerifyResult(status="rejected")``.

    Merge policy: when a peer verifies with an external id that already
    belongs to another user, the peer's link is moved to that user. The
    previous (channel-only) user is left in place without the link.
    """

    def __init__(
        self,
        db: Database,
        verifier: TokenVerifier | None,
        *,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._db = db
        self._verifier = verifier
        self._timeout_s = settings.store_timeout_ms / 1000.0

    @property
    def verification_enabled(self) -> bool:
        return self._verifier is not None

    async def _ensure_ready(self, operation: str, channel: str, peer_id: str) -> None:
        try:
            await self._db.ensure_ready()
        except Exception as exc:  # noqa: BLE001 - any init failure means the store is unusable
            logger.error(
                "identity_store_unavailable op=%s channel=%s peer_id=%s error=%s",
                operation,
                channel,
                peer_id,
                type(exc).__name__,
            )
            raise IdentityUnavailableError("identity store is not available") from exc

    async def _run(
        self,
        operation: str,
        channel: str,
        peer_id: str,
        work: Callable[[], Awaitable[T]],
    ) -> T:
        await self._ensure_ready(operation, channel, peer_id)
        try:
            return await asyncio.wait_for(work(), timeout=self._timeout_s)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "identity_store_failed op=%s channel=%s peer_id=%s error=%s",
                operation,
                channel,
                peer_id,
                type(exc).__name__,
            )
            raise IdentityUnavailableError(f"identity {operation} failed") from exc

    async def lookup(self, channel: str, peer_id: str) -> ResolvedIdentity | None:
        # Read-only: an unknown peer is reported, never created.
        async def _work() -> ResolvedIdentity | None:
            async with self._db.session() as session:
                return await identity_repo.find_identity_by_channel_peer(session, channel, peer_id)

        return await self._run("lookup", channel, peer_id, _work)

    async def list_channels(self, user_id: str) -> list[LinkedChannel]:
        async def _work() -> list[LinkedChannel]:
            async with self._db.session() as session:
                return await _linked_channels(session, user_id)

        return await self._run("list_channels", "*", user_id, _work)

    async def register(
        self,
        channel: str,
        peer_id: str,
        first_name: str,
        last_name: str | None = None,
    ) -> RegisterResult:
        first_name = first_name.strip()
        if not first_name:
            raise ValueError("first_name is required")
        last_name = (last_name or "").strip() or None

        async def _work() -> RegisterResult:
            async with self._db.session() as session:
                existing = await identity_repo.find_identity_by_channel_peer(session, channel, peer_id)
                if existing is None:
                    user = await identity_repo.create_user(
                        session, first_name=first_name, last_name=last_name
                    )
                    inserted = await identity_repo.insert_link_if_absent(
                        session, user_id=user.id, channel=channel, peer_id=peer_id
                    )
                    if inserted:
                        await session.commit()
                        identity = await identity_repo.find_identity_by_channel_peer(
                            session, channel, peer_id
                        )
                        logger.info(
                            "identity_registered channel=%s peer_id=%s user_id=%s",
                            channel,
                            peer_id,
                            user.id,
                        )
                        return RegisterResult(identity=identity, created=True)  # type: ignore[arg-type]
                    # A concurrent register won the link; drop our user and update theirs.
                    await session.rollback()
                    existing = await identity_repo.find_identity_by_channel_peer(
                        session, channel, peer_id
                    )
                    if existing is None:
                        raise IdentityUnavailableError("channel link vanished during register")
                await identity_repo.update_user_name(
                    session, user_id=existing.user_id, first_name=first_name, last_name=last_name
                )
                await session.commit()
                identity = await identity_repo.find_identity_by_channel_peer(session, channel, peer_id)
                logger.info(
                    "identity_name_updated channel=%s peer_id=%s user_id=%s",
                    channel,
                    peer_id,
                    existing.user_id,
                )
                return RegisterResult(identity=identity, created=False)  # type: ignore[arg-type]

        return await self._run("register", channel, peer_id, _work)

    async def verify(self, channel: str, peer_id: str, credential: str) -> VerifyResult:
        if self._verifier is None:
            raise VerificationNotConfiguredError("token verification is not configured")
        await self._ensure_ready("verify", channel, peer_id)
        verified = await verify_token(self._verifier, credential)
        if verified is None:
            logger.info("identity_verify_rejected channel=%s peer_id=%s", channel, peer_id)
            return VerifyResult(status="rejected")

        async def _work() -> VerifyResult:
            async with self._db.session() as session:
                try:
                    return await self._apply_verification(
                        session, channel, peer_id, verified, allow_upgrade=True
                    )
                except (IntegrityError, _UpgradeLost):
                    # Lost a race on users.external_id; the winner now owns it, so re-link.
                    await session.rollback()
                    logger.info(
                        "identity_verify_race channel=%s peer_id=%s", channel, peer_id
                    )
                    return await self._apply_verification(
                        session, channel, peer_id, verified, allow_upgrade=False
                    )

        return await self._run("verify", channel, peer_id, _work)

    async def _apply_verification(
        self,
        session: AsyncSession,
        channel: str,
        peer_id: str,
        verified: VerifiedIdentity,
        *,
        allow_upgrade: bool,
    ) -> VerifyResult:
        current = await identity_repo.find_identity_by_channel_peer(session, channel, peer_id)
        if current is not None and current.external_id == verified.external_id:
            return VerifyResult(
                status="already_verified",
                identity=current,
                verified=verified,
                channels=await _linked_channels(session, current.user_id),
            )

        status: VerifyStatus
        owner = await identity_repo.find_user_by_external_id(session, verified.external_id)
        if owner is not None:
            await identity_repo.link_channel(
                session, user_id=owner.id, channel=channel, peer_id=peer_id
            )
            user_id = owner.id
            status = "linked"
        elif allow_upgrade and current is not None and not current.verified:
            upgraded = await identity_repo.set_external_id(
                session, user_id=current.user_id, external_id=verified.external_id
            )
            if not upgraded:
                raise _UpgradeLost()
            if current.first_name is None and verified.first_name:
                await identity_repo.update_user_name(
                    session,
                    user_id=current.user_id,
                    first_name=verified.first_name,
                    last_name=verified.last_name,
                )
            user_id = current.user_id
            status = "upgraded"
        else:
            user, created = await identity_repo.insert_verified_user(
                session,
                external_id=verified.external_id,
                first_name=verified.first_name,
                last_name=verified.last_name,
            )
            await identity_repo.link_channel(
                session, user_id=user.id, channel=channel, peer_id=peer_id
            )
            user_id = user.id
            status = "created" if created else "linked"

        await session.commit()
        identity = await identity_repo.find_identity_by_channel_peer(session, channel, peer_id)
        if current is not None and current.user_id != user_id:
            logger.info(
                "identity_relinked channel=%s peer_id=%s from_user=%s to_user=%s",
                channel,
                peer_id,
                current.user_id,
                user_id,
            )
        logger.info(
            "identity_verified channel=%s peer_id=%s user_id=%s status=%s",
            channel,
            peer_id,
            user_id,
            status,
        )
        return VerifyResult(
            status=status,
            identity=identity,
            verified=verified,
            channels=await _linked_channels(session, user_id),
        )


async def _linked_channels(session: AsyncSession, user_id: str) -> list[LinkedChannel]:
    links = await identity_repo.list_user_channels(session, user_id)
    return [
        LinkedChannel(channel=link.channel, peer_id=link.peer_id, linked_at=link.linked_at)
        for link in links
    ]
