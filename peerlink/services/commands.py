from __future__ import annotations

import logging
from typing import Awaitable, Callable

from peerlink.core.errors import IdentityUnavailableError, VerificationNotConfiguredError
from peerlink.services.identity import IdentityResolver, LinkedChannel


logger = logging.getLogger(__name__)

UNAVAILABLE_TEXT = "Identity service is temporarily unavailable."
VERIFY_USAGE = "Usage: /verify <authorization_token>"
REGISTER_USAGE = "Usage: /register <first_name> <last_name>"
VERIFY_TIP = "Tip: Use /verify <token> to link your app account for cross-channel access."

CommandHandler = Callable[[IdentityResolver, str, str, str], Awaitable[str]]


def _inline_channels(channels: list[LinkedChannel]) -> str:
    return ", ".join(f"{c.channel}:{c.peer_id}" for c in channels)


async def verify_command(resolver: IdentityResolver, args: str, channel: str, peer_id: str) -> str:
    token = args.strip()
    if not token:
        return VERIFY_USAGE
    try:
        result = await resolver.verify(channel, peer_id, token)
    except VerificationNotConfiguredError:
        return "Token verification is not configured on this agent. Please contact the administrator."
    except IdentityUnavailableError:
        return UNAVAILABLE_TEXT

    if not result.ok or result.identity is None:
        return "Token verification failed. Please check your token and try again."
    if result.status == "already_verified":
        return f"You're already verified as {result.identity.display_name}. No changes made."

    name = result.identity.display_name
    if not name and result.verified is not None:
        name = f"{result.verified.first_name or ''} {result.verified.last_name or ''}".strip()
    welcome = f"Identity verified! Welcome, {name}." if name else "Identity verified! Welcome."
    return "\n".join(
        [
            welcome,
            f"Your user ID: {result.identity.user_id}",
            f"Linked channels: {_inline_channels(result.channels)}",
        ]
    )


async def register_command(resolver: IdentityResolver, args: str, channel: str, peer_id: str) -> str:
    if not args.strip():
        return REGISTER_USAGE
    parts = args.split()
    first_name = parts[0]
    last_name = " ".join(parts[1:]) or None
    full_name = f"{first_name} {last_name or ''}".strip()
    try:
        result = await resolver.register(channel, peer_id, first_name, last_name)
    except IdentityUnavailableError:
        return UNAVAILABLE_TEXT

    if not result.created:
        text = f"Updated your name to {full_name}."
        if not result.identity.verified:
            text += "\n" + VERIFY_TIP
        return text
    return "\n".join(
        [
            f"Registered as {full_name}.",
            f"Your user ID: {result.identity.user_id}",
            VERIFY_TIP,
        ]
    )


async def whoami_command(resolver: IdentityResolver, args: str, channel: str, peer_id: str) -> str:
    try:
        identity = await resolver.lookup(channel, peer_id)
        if identity is None:
            return (
                "You are not registered.\n"
                f"Current channel: {channel}\n"
                f"Channel ID: {peer_id}\n\n"
                "Use /register <first_name> <last_name> or /verify <token> to set up your identity."
            )
        channels = await resolver.list_channels(identity.user_id)
    except IdentityUnavailableError:
        return UNAVAILABLE_TEXT

    lines = [f"User ID: {identity.user_id}"]
    if identity.display_name:
        lines.append(f"Name: {identity.display_name}")
    lines.append(f"Verified: {'yes' if identity.verified else 'no'}")
    if identity.external_id:
        lines.append(f"External ID: {identity.external_id}")
    lines.append("Linked channels:")
    lines.extend(f"  - {c.channel}: {c.peer_id}" for c in channels)
    return "\n".join(lines)


COMMANDS: dict[str, CommandHandler] = {
    "verify": verify_command,
    "register": register_command,
    "whoami": whoami_command,
}


async def handle_command(
    resolver: IdentityResolver,
    name: str,
    args: str | None,
    channel: str | None,
    peer_id: str | None,
) -> str:
    """Run a chat command for the sender and return the reply text."""
    handler = COMMANDS.get(name.lstrip("/").lower())
    if handler is None:
        raise ValueError(f"Unknown command: {name}")
    channel = channel or "unknown"
    peer_id = peer_id or "unknown"
    reply = await handler(resolver, args or "", channel, peer_id)
    logger.info("command_handled name=%s channel=%s peer_id=%s", name, channel, peer_id)
    return reply
