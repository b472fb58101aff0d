from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peerlink.core.errors import DatabaseError
from peerlink.domain.models import Conversation
from peerlink.persistence.upserts import dialect_insert


async def get_conversation(session: AsyncSession, session_key: str) -> Conversation | None:
    result = await session.execute(
        select(Conversation)
        .where(Conversation.session_key == session_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def ensure_conversation(session: AsyncSession, *, session_key: str, channel: str) -> Conversation:
    # Create-or-reuse only. This path must never touch message_count or last_message_at.
    existing = await get_conversation(session, session_key)
    if existing is not None:
        return existing

    # Race-safe insert: if another request creates the conversation first, reload instead.
    now = datetime.now(timezone.utc)
    stmt = dialect_insert(session, Conversation).values(
        id=str(uuid4()),
        session_key=session_key,
        channel=channel,
        started_at=now,
        last_message_at=now,
        message_count=0,
    )
    await session.execute(stmt.on_conflict_do_nothing(index_elements=[Conversation.session_key]))

    created = await get_conversation(session, session_key)
    if created is None:
        raise DatabaseError("conversation insert failed unexpectedly")
    return created


async def list_conversations(
    session: AsyncSession,
    *,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    updated_after: datetime | None = None,
    updated_before: datetime | None = None,
    limit: int | None = None,
) -> list[Conversation]:
    stmt = select(Conversation)
    if created_after is not None:
        stmt = stmt.where(Conversation.started_at >= created_after)
    if created_before is not None:
        stmt = stmt.where(Conversation.started_at <= created_before)
    if updated_after is not None:
        stmt = stmt.where(Conversation.last_message_at >= updated_after)
    if updated_before is not None:
        stmt = stmt.where(Conversation.last_message_at <= updated_before)
    stmt = stmt.order_by(Conversation.last_message_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def _epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def to_session_entry(conversation: Conversation) -> dict[str, Any]:
    # Shape consumed by the host's session listing.
    return {
        "sessionId": conversation.id,
        "createdAt": _epoch_ms(conversation.started_at),
        "updatedAt": _epoch_ms(conversation.last_message_at),
        "channel": conversation.channel,
        "displayName": f"{conversation.channel}:{conversation.session_key}",
        "messageCount": conversation.message_count,
    }
