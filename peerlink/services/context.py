from __future__ import annotations

import logging

from peerlink.core.config import Settings, get_settings
from peerlink.core.errors import IdentityUnavailableError
from peerlink.services.identity import IdentityResolver
from peerlink.services.scope import (
    build_scope_block,
    identity_block,
    render_identity_block,
    render_scope_block,
    resolve_scope,
    unregistered_identity_block,
)
from peerlink.services.session_keys import resolve_session_peer


logger = logging.getLogger(__name__)


async def build_agent_context(
    resolver: IdentityResolver,
    session_key: str | None,
    message_provider: str | None = None,
    *,
    settings: Settings | None = None,
) -> str | None:
    """Context prepended to an agent run: identity block, then memory scope.

    Shared and unparseable sessions get nothing. Unregistered peers get the
    onboarding hint and no scope. A store outage degrades to no context.
    """
    settings = settings or get_settings()
    peer = resolve_session_peer(session_key, message_provider)
    if not peer.has_peer:
        return None
    try:
        identity = await resolver.lookup(peer.channel, peer.peer_id)
    except IdentityUnavailableError:
        logger.warning(
            "agent_context_skipped channel=%s peer_id=%s reason=identity_unavailable",
            peer.channel,
            peer.peer_id,
        )
        return None

    if identity is None:
        return render_identity_block(unregistered_identity_block(peer.channel, peer.peer_id))

    scope = resolve_scope(identity, channel=peer.channel, peer_id=peer.peer_id)
    block = build_scope_block(
        scope,
        require_verified=settings.scope_require_verified,
        gate_message=settings.scope_gate_message,
    )
    logger.info(
        "scope_resolved channel=%s peer_id=%s scope_key=%s verified=%s gated=%s",
        peer.channel,
        peer.peer_id,
        scope.scope_key,
        scope.verified,
        block.gated,
    )
    return "\n\n".join(
        [
            render_identity_block(identity_block(identity, "new_session")),
            render_scope_block(block),
        ]
    )
