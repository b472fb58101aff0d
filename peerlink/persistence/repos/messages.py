from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from peerlink.domain.models import Conversation, Message


MESSAGE_ROLES = frozenset({"user", "assistant"})


async def add_message(
    session: AsyncSession,
    *,
    conversation_id: str,
    role: str,
    content: str,
    metadata: dict[str, Any] | None = None,
) -> Message:
    # The only place message_count moves: one insert, one increment, same transaction.
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Unsupported message role: {role}")
    now = datetime.now(timezone.utc)
    message = Message(
        id=str(uuid4()),
        conversation_id=conversation_id,
        role=role,
        content=content,
        created_at=now,
        metadata_json=dict(metadata or {}),
    )
    session.add(message)
    await session.flush()
    await session.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(message_count=Conversation.message_count + 1, last_message_at=now)
        .execution_options(synchronize_session=False)
    )
    return message


async def list_messages(session: AsyncSession, conversation_id: str) -> list[Message]:
    result = await session.execute(
        select(Message)
        .where(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.asc())
    )
    return list(result.scalars().all())


async def count_messages(session: AsyncSession, conversation_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Message).where(Message.conversation_id == conversation_id)
    )
    return int(result.scalar_one())
