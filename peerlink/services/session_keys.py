from __future__ import annotations

from typing import NamedTuple


_NO_PEER = frozenset({"", "main", "unknown"})


class SessionPeer(NamedTuple):
    channel: str
    peer_id: str

    @property
    def has_peer(self) -> bool:
        # Shared (main) and unparseable sessions carry no per-user identity.
        return self.peer_id not in _NO_PEER


def parse_session_key(session_key: str) -> SessionPeer:
    """Split a host session key into its channel and peer id.

    Recognized shapes::

        agent:{agentId}:main                          shared session, no peer
        agent:{agentId}:direct:{peerId}
        agent:{agentId}:{channel}:direct:{peerId}
        agent:{agentId}:{channel}:{peerId...}

    Peer ids may contain colons (``+1:555...``) and are re-joined rather than
    split further. Anything else degrades to ``("unknown", session_key)``.
    """
    parts = session_key.split(":")
    if len(parts) < 3 or parts[0] != "agent":
        return SessionPeer("unknown", session_key)
    channel = parts[2]
    rest = parts[2:]
    if "direct" in rest:
        direct_idx = rest.index("direct")
        if direct_idx < len(rest) - 1:
            return SessionPeer(channel, ":".join(rest[direct_idx + 1 :]))
    if len(rest) >= 2:
        return SessionPeer(channel, ":".join(rest[1:]))
    return SessionPeer(channel, rest[0])


def resolve_session_peer(session_key: str | None, message_provider: str | None = None) -> SessionPeer:
    # Hosts that know the transport pass it explicitly; it wins over the parsed segment.
    parsed = parse_session_key(session_key or "")
    if message_provider:
        return SessionPeer(message_provider, parsed.peer_id)
    return parsed
