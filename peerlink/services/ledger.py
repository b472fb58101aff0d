from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from peerlink.core.config import Settings, get_settings
from peerlink.core.errors import DatabaseError
from peerlink.domain.events import AgentEnded, AgentStarted, HostEvent, MessageReceived, MessageSent
from peerlink.domain.models import Conversation, Message
from peerlink.persistence.db import Database
from peerlink.persistence.repos import conversations as conversations_repo
from peerlink.persistence.repos import messages as messages_repo
from peerlink.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_SOURCES = ("agent_start", "message_received")
ASSISTANT_SOURCES = ("agent_end", "message_sent")
UNKNOWN_SESSION_KEY = "unknown"


@dataclass(frozen=True)
class LedgerEntry:
    conversation_key: str
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


def select_ledger_entry(event: HostEvent, settings: Settings | None = None) -> LedgerEntry | None:
    """Map a host event to the message it should record, if any.

    The same logical message is observable at two points per direction
    (agent start vs. channel receive, agent end vs. channel send). Only the
    configured point produces an entry, so each message is counted once.
    """
    settings = settings or get_settings()
    if not settings.persist_enabled:
        return None
    user_source = settings.persist_user_source
    assistant_source = settings.persist_assistant_source
    if isinstance(event, AgentStarted):
        if user_source != "agent_start":
            return None
        return LedgerEntry(
            conversation_key=event.session_key or UNKNOWN_SESSION_KEY,
            role="user",
            content=event.prompt,
            metadata={"source": "agent_start"},
        )
    if isinstance(event, AgentEnded):
        if assistant_source != "agent_end":
            return None
        return LedgerEntry(
            conversation_key=event.session_key or UNKNOWN_SESSION_KEY,
            role="assistant",
            content=event.last_assistant_text(),
            metadata={"source": "agent_end"},
        )
    if isinstance(event, MessageReceived):
        if user_source != "message_received":
            return None
        return LedgerEntry(
            conversation_key=event.sender or UNKNOWN_SESSION_KEY,
            role="user",
            content=event.content,
            metadata={"source": "message_received"},
        )
    if isinstance(event, MessageSent):
        if assistant_source != "message_sent":
            return None
        return LedgerEntry(
            conversation_key=event.recipient or UNKNOWN_SESSION_KEY,
            role="assistant",
            content=event.content,
            metadata={"source": "message_sent"},
        )
    return None


class MessageLedger:
    """Append-only conversation log with a per-conversation message counter."""

    def __init__(self, db: Database, *, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._db = db
        self._channel = settings.persist_channel
        self._timeout_s = settings.store_timeout_ms / 1000.0

    async def _run(self, operation: str, key: str, work: Callable[[], Awaitable[T]]) -> T:
        try:
            await self._db.ensure_ready()
            return await asyncio.wait_for(work(), timeout=self._timeout_s)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "ledger_store_failed op=%s session_key=%s error=%s",
                operation,
                key,
                type(exc).__name__,
            )
            raise DatabaseError(f"ledger {operation} failed") from exc

    async def touch_conversation(self, conversation_key: str, channel: str | None = None) -> Conversation:
        async def _work() -> Conversation:
            async with self._db.session() as session:
                conversation = await conversations_repo.ensure_conversation(
                    session, session_key=conversation_key, channel=channel or self._channel
                )
                await session.commit()
                return conversation

        return await self._run("touch", conversation_key, _work)

    async def record_message(
        self,
        conversation_key: str,
        role: str,
        content: str,
        *,
        channel: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message | None:
        # Empty content still ensures the conversation exists but records nothing.
        if role not in messages_repo.MESSAGE_ROLES:
            raise ValueError(f"Unsupported message role: {role}")

        async def _work() -> Message | None:
            async with self._db.session() as session:
                conversation = await conversations_repo.ensure_conversation(
                    session, session_key=conversation_key, channel=channel or self._channel
                )
                message = None
                if content:
                    message = await messages_repo.add_message(
                        session,
                        conversation_id=conversation.id,
                        role=role,
                        content=content,
                        metadata=metadata,
                    )
                await session.commit()
                return message

        message = await self._run("record", conversation_key, _work)
        if message is not None:
            increment_counter("ledger_messages_inserted_total")
            logger.info(
                "ledger_message_recorded session_key=%s role=%s chars=%s",
                conversation_key,
                role,
                len(content),
            )
        return message

    async def record(self, entry: LedgerEntry) -> Message | None:
        return await self.record_message(
            entry.conversation_key,
            entry.role,
            entry.content,
            metadata=entry.metadata,
        )

    async def get_conversation(self, conversation_key: str) -> Conversation | None:
        async def _work() -> Conversation | None:
            async with self._db.session() as session:
                return await conversations_repo.get_conversation(session, conversation_key)

        return await self._run("get", conversation_key, _work)

    async def list_conversations(
        self,
        *,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        updated_after: datetime | None = None,
        updated_before: datetime | None = None,
        limit: int | None = None,
    ) -> list[Conversation]:
        async def _work() -> list[Conversation]:
            async with self._db.session() as session:
                return await conversations_repo.list_conversations(
                    session,
                    created_after=created_after,
                    created_before=created_before,
                    updated_after=updated_after,
                    updated_before=updated_before,
                    limit=limit,
                )

        return await self._run("list", "*", _work)

    async def list_messages(self, conversation_key: str) -> list[Message] | None:
        # None when the conversation does not exist; [] when it exists but is empty.
        async def _work() -> list[Message] | None:
            async with self._db.session() as session:
                conversation = await conversations_repo.get_conversation(session, conversation_key)
                if conversation is None:
                    return None
                return await messages_repo.list_messages(session, conversation.id)

        return await self._run("messages", conversation_key, _work)
