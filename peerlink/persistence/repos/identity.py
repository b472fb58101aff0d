from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from peerlink.core.errors import DatabaseError
from peerlink.domain.models import ChannelLink, User
from peerlink.persistence.upserts import dialect_insert


@dataclass(frozen=True)
class ResolvedIdentity:
    # Joined User + ChannelLink row for one (channel, peer_id).
    user_id: str
    external_id: str | None
    first_name: str | None
    last_name: str | None
    channel: str
    peer_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def verified(self) -> bool:
        return self.external_id is not None

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


def _to_identity(user: User, link: ChannelLink) -> ResolvedIdentity:
    return ResolvedIdentity(
        user_id=user.id,
        external_id=user.external_id,
        first_name=user.first_name,
        last_name=user.last_name,
        channel=link.channel,
        peer_id=link.peer_id,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


async def find_identity_by_channel_peer(
    session: AsyncSession, channel: str, peer_id: str
) -> ResolvedIdentity | None:
    result = await session.execute(
        select(User, ChannelLink)
        .join(ChannelLink, ChannelLink.user_id == User.id)
        .where(ChannelLink.channel == channel, ChannelLink.peer_id == peer_id)
        .limit(1)
        # Reload attributes even when the row is already in this session.
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None:
        return None
    user, link = row
    return _to_identity(user, link)


async def find_user_by_external_id(session: AsyncSession, external_id: str) -> User | None:
    result = await session.execute(
        select(User)
        .where(User.external_id == external_id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    *,
    first_name: str | None,
    last_name: str | None,
) -> User:
    # Channel-only users carry no external_id, so no uniqueness conflict is possible.
    user = User(id=str(uuid4()), first_name=first_name, last_name=last_name)
    session.add(user)
    await session.flush()
    return user


async def insert_verified_user(
    session: AsyncSession,
    *,
    external_id: str,
    first_name: str | None,
    last_name: str | None,
) -> tuple[User, bool]:
    # Race-safe insert: a concurrent winner for the same external_id is returned instead.
    user_id = str(uuid4())
    stmt = dialect_insert(session, User).values(
        id=user_id,
        external_id=external_id,
        first_name=first_name,
        last_name=last_name,
    )
    await session.execute(stmt.on_conflict_do_nothing(index_elements=[User.external_id]))
    user = await find_user_by_external_id(session, external_id)
    if user is None:
        raise DatabaseError("verified user insert failed unexpectedly")
    return user, user.id == user_id


async def link_channel(session: AsyncSession, *, user_id: str, channel: str, peer_id: str) -> None:
    # Upsert: an existing (channel, peer_id) link is reassigned, never duplicated.
    # linked_at is set client-side so link order survives second-resolution store clocks.
    linked_at = datetime.now(timezone.utc)
    stmt = dialect_insert(session, ChannelLink).values(
        id=str(uuid4()),
        user_id=user_id,
        channel=channel,
        peer_id=peer_id,
        linked_at=linked_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ChannelLink.channel, ChannelLink.peer_id],
        set_={"user_id": user_id, "linked_at": linked_at},
    )
    await session.execute(stmt)


async def insert_link_if_absent(
    session: AsyncSession, *, user_id: str, channel: str, peer_id: str
) -> bool:
    # Return False when another writer already owns the (channel, peer_id) link.
    link_id = str(uuid4())
    stmt = dialect_insert(session, ChannelLink).values(
        id=link_id,
        user_id=user_id,
        channel=channel,
        peer_id=peer_id,
        linked_at=datetime.now(timezone.utc),
    )
    await session.execute(
        stmt.on_conflict_do_nothing(index_elements=[ChannelLink.channel, ChannelLink.peer_id])
    )
    result = await session.execute(
        select(ChannelLink.id).where(ChannelLink.channel == channel, ChannelLink.peer_id == peer_id)
    )
    return result.scalar_one_or_none() == link_id


async def update_user_name(
    session: AsyncSession, *, user_id: str, first_name: str, last_name: str | None
) -> None:
    await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(first_name=first_name, last_name=last_name, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )


async def set_external_id(session: AsyncSession, *, user_id: str, external_id: str) -> bool:
    # external_id is written once; a unique violation propagates as IntegrityError.
    result = await session.execute(
        update(User)
        .where(User.id == user_id, User.external_id.is_(None))
        .values(external_id=external_id, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def list_user_channels(session: AsyncSession, user_id: str) -> list[ChannelLink]:
    result = await session.execute(
        select(ChannelLink)
        .where(ChannelLink.user_id == user_id)
        .order_by(ChannelLink.linked_at.asc(), ChannelLink.channel.asc(), ChannelLink.peer_id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
