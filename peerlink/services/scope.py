"""Memory scope derivation and the context blocks handed to downstream consumers.

Blocks are typed records internally. The text rendering is a compatibility
contract read by memory components: marker strings, field names and field
order must not change without bumping ``SCOPE_BLOCK_VERSION``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from peerlink.persistence.repos.identity import ResolvedIdentity


SCOPE_BLOCK_VERSION = 1

SCOPE_OPEN = "[MEMORY_SCOPE]"
SCOPE_CLOSE = "[/MEMORY_SCOPE]"
IDENTITY_OPEN = "[USER_IDENTITY]"
IDENTITY_CLOSE = "[/USER_IDENTITY]"

DEFAULT_GATE_MESSAGE = (
    "Memory retrieval is not available until identity is verified.\n"
    "The user can verify by typing: /verify <token>"
)
UNREGISTERED_HINT = (
    "This user is not registered. You may ask for their name.\n"
    "If they have an authorization token from the app, they can type: /verify <token>\n"
    "To register with just a name: /register <first_name> <last_name>"
)

IdentityStatus = Literal["verified", "registered", "new_session", "unregistered"]


@dataclass(frozen=True)
class ScopeResult:
    user_id: str
    external_id: str | None
    scope_key: str
    verified: bool
    channel: str
    peer_id: str


@dataclass(frozen=True)
class MemoryScopeBlock:
    gated: bool
    scope_key: str | None = None
    user_id: str | None = None
    external_id: str | None = None
    verified: bool | None = None
    gate_message: str | None = None
    kind: Literal["memory_scope"] = "memory_scope"
    version: int = SCOPE_BLOCK_VERSION


@dataclass(frozen=True)
class IdentityBlock:
    user_id: str | None
    external_id: str | None
    name: str
    channel: str
    peer_id: str
    verified: bool
    status: IdentityStatus
    kind: Literal["user_identity"] = "user_identity"
    version: int = SCOPE_BLOCK_VERSION


def resolve_scope(
    identity: ResolvedIdentity,
    *,
    channel: str | None = None,
    peer_id: str | None = None,
) -> ScopeResult:
    # Verified users share one key across channels; channel-only users stay on their own id.
    scope_key = identity.external_id if identity.external_id is not None else identity.user_id
    return ScopeResult(
        user_id=identity.user_id,
        external_id=identity.external_id,
        scope_key=scope_key,
        verified=identity.verified,
        channel=channel or identity.channel,
        peer_id=peer_id or identity.peer_id,
    )


def build_scope_block(
    scope: ScopeResult,
    *,
    require_verified: bool = False,
    gate_message: str | None = None,
) -> MemoryScopeBlock:
    if require_verified and not scope.verified:
        custom = (gate_message or "").strip()
        return MemoryScopeBlock(gated=True, gate_message=custom or DEFAULT_GATE_MESSAGE)
    return MemoryScopeBlock(
        gated=False,
        scope_key=scope.scope_key,
        user_id=scope.user_id,
        external_id=scope.external_id,
        verified=scope.verified,
    )


def _bool_text(value: bool | None) -> str:
    return "true" if value else "false"


def render_scope_block(block: MemoryScopeBlock) -> str:
    if block.gated:
        lines = [SCOPE_OPEN, "gated: true", SCOPE_CLOSE, ""]
        lines.append(block.gate_message or DEFAULT_GATE_MESSAGE)
        return "\n".join(lines)
    return "\n".join(
        [
            SCOPE_OPEN,
            f"scope_key: {block.scope_key}",
            f"user_id: {block.user_id}",
            f"external_id: {block.external_id or 'none'}",
            f"verified: {_bool_text(block.verified)}",
            "gated: false",
            SCOPE_CLOSE,
        ]
    )


def _block_fields(text: str, open_marker: str, close_marker: str) -> tuple[dict[str, str], str] | None:
    start = text.find(open_marker)
    if start < 0:
        return None
    end = text.find(close_marker, start + len(open_marker))
    if end < 0:
        return None
    body = text[start + len(open_marker) : end]
    fields: dict[str, str] = {}
    for line in body.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        fields[key.strip()] = value.strip()
    trailer = text[end + len(close_marker) :].strip()
    return fields, trailer


def _none_text(value: str | None) -> str | None:
    if value is None or value == "none":
        return None
    return value


def parse_scope_block(text: str) -> MemoryScopeBlock | None:
    """Read a rendered ``[MEMORY_SCOPE]`` block back into its typed form."""
    parsed = _block_fields(text, SCOPE_OPEN, SCOPE_CLOSE)
    if parsed is None:
        return None
    fields, trailer = parsed
    if fields.get("gated") == "true":
        return MemoryScopeBlock(gated=True, gate_message=trailer or None)
    scope_key = _none_text(fields.get("scope_key"))
    if scope_key is None:
        return None
    return MemoryScopeBlock(
        gated=False,
        scope_key=scope_key,
        user_id=_none_text(fields.get("user_id")),
        external_id=_none_text(fields.get("external_id")),
        verified=fields.get("verified") == "true",
    )


def identity_block(identity: ResolvedIdentity, status: IdentityStatus) -> IdentityBlock:
    return IdentityBlock(
        user_id=identity.user_id,
        external_id=identity.external_id,
        name=identity.display_name or "unknown",
        channel=identity.channel,
        peer_id=identity.peer_id,
        verified=identity.verified,
        status=status,
    )


def unregistered_identity_block(channel: str, peer_id: str) -> IdentityBlock:
    return IdentityBlock(
        user_id=None,
        external_id=None,
        name="unknown",
        channel=channel,
        peer_id=peer_id,
        verified=False,
        status="unregistered",
    )


def render_identity_block(block: IdentityBlock) -> str:
    lines = [
        IDENTITY_OPEN,
        f"user_id: {block.user_id or 'none'}",
        f"external_id: {block.external_id or 'none'}",
        f"name: {block.name}",
        f"channel: {block.channel}",
        f"channel_peer_id: {block.peer_id}",
        f"verified: {_bool_text(block.verified)}",
        f"status: {block.status}",
        IDENTITY_CLOSE,
    ]
    if block.status == "unregistered":
        lines.extend(["", UNREGISTERED_HINT])
    return "\n".join(lines)


def parse_identity_block(text: str) -> IdentityBlock | None:
    parsed = _block_fields(text, IDENTITY_OPEN, IDENTITY_CLOSE)
    if parsed is None:
        return None
    fields, _trailer = parsed
    status = fields.get("status")
    if status not in ("verified", "registered", "new_session", "unregistered"):
        return None
    return IdentityBlock(
        user_id=_none_text(fields.get("user_id")),
        external_id=_none_text(fields.get("external_id")),
        name=fields.get("name", "unknown"),
        channel=fields.get("channel", "unknown"),
        peer_id=fields.get("channel_peer_id", ""),
        verified=fields.get("verified") == "true",
        status=status,  # type: ignore[arg-type]
    )
