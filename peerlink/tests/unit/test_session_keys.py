from __future__ import annotations

from peerlink.services.session_keys import SessionPeer, parse_session_key, resolve_session_peer


def test_channel_and_direct_peer() -> None:
    assert parse_session_key("agent:main:whatsapp:direct:+15551230000") == SessionPeer(
        "whatsapp", "+15551230000"
    )


def test_peer_ids_keep_their_colons() -> None:
    # Telegram-style ids and phone numbers with separators must not be split.
    assert parse_session_key("agent:a1:telegram:group:123:456") == SessionPeer(
        "telegram", "group:123:456"
    )
    assert parse_session_key("agent:a1:signal:direct:+1:555:0100") == SessionPeer(
        "signal", "+1:555:0100"
    )


def test_unparseable_keys_fall_back_to_unknown() -> None:
    assert parse_session_key("weird-key") == SessionPeer("unknown", "weird-key")
    assert parse_session_key("agent:only") == SessionPeer("unknown", "agent:only")
    assert parse_session_key("bot:a1:web:sess-9") == SessionPeer("unknown", "bot:a1:web:sess-9")
    assert parse_session_key("") == SessionPeer("unknown", "")


def test_shared_sessions_have_no_peer() -> None:
    assert parse_session_key("agent:a1:main").has_peer is False
    assert parse_session_key("weird-key").has_peer is True
    assert SessionPeer("web", "unknown").has_peer is False
    assert parse_session_key("agent:a1:web:sess-9").has_peer is True


def test_direct_marker_without_peer_keeps_remainder() -> None:
    assert parse_session_key("agent:a1:web:direct") == SessionPeer("web", "direct")


def test_message_provider_overrides_parsed_channel() -> None:
    peer = resolve_session_peer("agent:a1:gateway:direct:+15551230000", "whatsapp")
    assert peer == SessionPeer("whatsapp", "+15551230000")
    assert resolve_session_peer(None).peer_id == ""
    assert resolve_session_peer("agent:a1:web:sess-9", None) == SessionPeer("web", "sess-9")
