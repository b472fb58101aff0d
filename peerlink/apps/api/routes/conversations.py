from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from peerlink.apps.api.deps import get_ledger
from peerlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from peerlink.apps.api.response import SuccessEnvelope, success_response
from peerlink.persistence.repos.conversations import to_session_entry
from peerlink.services.ledger import MessageLedger


router = APIRouter(prefix="/conversations", tags=["conversations"], responses=DEFAULT_ERROR_RESPONSES)


class SessionEntryResponse(BaseModel):
    sessionId: str
    createdAt: int
    updatedAt: int
    channel: str
    displayName: str
    messageCount: int


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    created_at: datetime
    metadata: dict[str, Any]


@router.get("", response_model=SuccessEnvelope[list[SessionEntryResponse]] | list[SessionEntryResponse])
async def list_conversations(
    request: Request,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    updated_after: datetime | None = None,
    updated_before: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    ledger: MessageLedger = Depends(get_ledger),
) -> dict:
    conversations = await ledger.list_conversations(
        created_after=created_after,
        created_before=created_before,
        updated_after=updated_after,
        updated_before=updated_before,
        limit=limit,
    )
    entries = [SessionEntryResponse(**to_session_entry(conv)) for conv in conversations]
    return success_response(request=request, data=entries)


@router.get(
    "/{session_key}/messages",
    response_model=SuccessEnvelope[list[MessageResponse]] | list[MessageResponse],
)
async def list_conversation_messages(
    session_key: str,
    request: Request,
    ledger: MessageLedger = Depends(get_ledger),
) -> dict:
    messages = await ledger.list_messages(session_key)
    if messages is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    data = [
        MessageResponse(
            id=message.id,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
            metadata=message.metadata_json or {},
        )
        for message in messages
    ]
    return success_response(request=request, data=data)
