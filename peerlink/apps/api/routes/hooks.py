from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from peerlink.apps.api.deps import get_app_settings, get_ledger, get_resolver
from peerlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from peerlink.apps.api.response import SuccessEnvelope, success_response
from peerlink.core.config import Settings
from peerlink.core.errors import DatabaseError
from peerlink.domain.events import HOST_EVENT_NAMES, AgentStarted, HostEvent, parse_host_event
from peerlink.services.context import build_agent_context
from peerlink.services.identity import IdentityResolver
from peerlink.services.ledger import MessageLedger, select_ledger_entry


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hooks", tags=["hooks"], responses=DEFAULT_ERROR_RESPONSES)


class HookRequest(BaseModel):
    # Raw host payloads; shapes vary by host version and are parsed leniently.
    event: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)


class HookResponse(BaseModel):
    prepend_context: str | None = None
    recorded: bool = False


async def _record(ledger: MessageLedger, event: HostEvent, settings: Settings) -> bool:
    entry = select_ledger_entry(event, settings)
    if entry is None:
        return False
    try:
        message = await ledger.record(entry)
    except DatabaseError:
        # The agent run must not fail because the transcript could not be written.
        logger.warning("hook_record_skipped kind=%s session_key=%s", event.kind, entry.conversation_key)
        return False
    return message is not None


@router.post("/{event_name}", response_model=SuccessEnvelope[HookResponse] | HookResponse)
async def handle_hook(
    event_name: str,
    request: Request,
    payload: HookRequest,
    resolver: IdentityResolver = Depends(get_resolver),
    ledger: MessageLedger = Depends(get_ledger),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    if event_name not in HOST_EVENT_NAMES:
        raise HTTPException(status_code=404, detail=f"Unknown hook: {event_name}")
    event = parse_host_event(event_name, payload.event, payload.context)
    if event is None:
        raise HTTPException(status_code=404, detail=f"Unknown hook: {event_name}")

    response = HookResponse()
    if isinstance(event, AgentStarted):
        response.prepend_context = await build_agent_context(
            resolver, event.session_key, event.message_provider, settings=settings
        )
    response.recorded = await _record(ledger, event, settings)
    return success_response(request=request, data=response)
