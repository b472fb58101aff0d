from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from peerlink.apps.api.deps import get_resolver
from peerlink.apps.api.openapi import DEFAULT_ERROR_RESPONSES, VERIFY_ERROR_RESPONSES
from peerlink.apps.api.response import SuccessEnvelope, success_response
from peerlink.persistence.repos.identity import ResolvedIdentity
from peerlink.services.identity import IdentityResolver, LinkedChannel


router = APIRouter(prefix="/identity", tags=["identity"], responses=DEFAULT_ERROR_RESPONSES)


class IdentityResponse(BaseModel):
    user_id: str
    external_id: str | None
    first_name: str | None
    last_name: str | None
    channel: str
    peer_id: str
    verified: bool


class ChannelResponse(BaseModel):
    channel: str
    peer_id: str
    linked_at: datetime | None


class RegisterRequest(BaseModel):
    channel: str = Field(min_length=1, max_length=50)
    peer_id: str = Field(min_length=1, max_length=512)
    first_name: str = Field(min_length=1, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)

    model_config = {"extra": "forbid"}


class RegisterResponse(BaseModel):
    identity: IdentityResponse
    created: bool


class VerifyRequest(BaseModel):
    channel: str = Field(min_length=1, max_length=50)
    peer_id: str = Field(min_length=1, max_length=512)
    token: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class VerifyResponse(BaseModel):
    status: str
    identity: IdentityResponse
    channels: list[ChannelResponse]


def _to_response(identity: ResolvedIdentity) -> IdentityResponse:
    return IdentityResponse(
        user_id=identity.user_id,
        external_id=identity.external_id,
        first_name=identity.first_name,
        last_name=identity.last_name,
        channel=identity.channel,
        peer_id=identity.peer_id,
        verified=identity.verified,
    )


def _to_channels(channels: list[LinkedChannel]) -> list[ChannelResponse]:
    return [ChannelResponse(channel=c.channel, peer_id=c.peer_id, linked_at=c.linked_at) for c in channels]


def _not_registered() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "IDENTITY_NOT_FOUND", "message": "No identity is linked to this channel peer"},
    )


@router.get("", response_model=SuccessEnvelope[IdentityResponse] | IdentityResponse)
async def lookup_identity(
    request: Request,
    channel: str = Query(min_length=1),
    peer_id: str = Query(min_length=1),
    resolver: IdentityResolver = Depends(get_resolver),
) -> dict:
    identity = await resolver.lookup(channel, peer_id)
    if identity is None:
        raise _not_registered()
    return success_response(request=request, data=_to_response(identity))


@router.get("/channels", response_model=SuccessEnvelope[list[ChannelResponse]] | list[ChannelResponse])
async def list_identity_channels(
    request: Request,
    channel: str = Query(min_length=1),
    peer_id: str = Query(min_length=1),
    resolver: IdentityResolver = Depends(get_resolver),
) -> dict:
    identity = await resolver.lookup(channel, peer_id)
    if identity is None:
        raise _not_registered()
    channels = await resolver.list_channels(identity.user_id)
    return success_response(request=request, data=_to_channels(channels))


@router.post("/register", response_model=SuccessEnvelope[RegisterResponse] | RegisterResponse)
async def register_identity(
    request: Request,
    payload: RegisterRequest,
    resolver: IdentityResolver = Depends(get_resolver),
) -> dict:
    try:
        result = await resolver.register(
            payload.channel, payload.peer_id, payload.first_name, payload.last_name
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    data = RegisterResponse(identity=_to_response(result.identity), created=result.created)
    return success_response(request=request, data=data)


@router.post(
    "/verify",
    response_model=SuccessEnvelope[VerifyResponse] | VerifyResponse,
    responses=VERIFY_ERROR_RESPONSES,
)
async def verify_identity(
    request: Request,
    payload: VerifyRequest,
    resolver: IdentityResolver = Depends(get_resolver),
) -> dict:
    # VerificationNotConfiguredError and store faults are mapped by the app-level handlers.
    result = await resolver.verify(payload.channel, payload.peer_id, payload.token)
    if not result.ok or result.identity is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Token verification failed"},
        )
    data = VerifyResponse(
        status=result.status,
        identity=_to_response(result.identity),
        channels=_to_channels(result.channels),
    )
    return success_response(request=request, data=data)
