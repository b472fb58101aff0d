from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from peerlink.apps.api.deps import get_resolver
from peerlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from peerlink.apps.api.response import SuccessEnvelope, success_response
from peerlink.services.commands import COMMANDS, handle_command
from peerlink.services.identity import IdentityResolver


router = APIRouter(prefix="/commands", tags=["commands"], responses=DEFAULT_ERROR_RESPONSES)


class CommandRequest(BaseModel):
    args: str = Field(default="")
    channel: str | None = None
    peer_id: str | None = None


class CommandResponse(BaseModel):
    text: str


@router.post("/{name}", response_model=SuccessEnvelope[CommandResponse] | CommandResponse)
async def run_command(
    name: str,
    request: Request,
    payload: CommandRequest,
    resolver: IdentityResolver = Depends(get_resolver),
) -> dict:
    if name.lower() not in COMMANDS:
        raise HTTPException(status_code=404, detail=f"Unknown command: {name}")
    # Command handlers answer store outages with reply text rather than errors.
    text = await handle_command(resolver, name, payload.args, payload.channel, payload.peer_id)
    return success_response(request=request, data=CommandResponse(text=text))
