from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Literal, Mapping, Union


@dataclass(frozen=True)
class TranscriptMessage:
    role: str
    text: str


@dataclass(frozen=True)
class AgentStarted:
    session_key: str
    prompt: str
    message_provider: str | None = None
    kind: Literal["before_agent_start"] = "before_agent_start"


@dataclass(frozen=True)
class AgentEnded:
    session_key: str
    messages: tuple[TranscriptMessage, ...]
    kind: Literal["agent_end"] = "agent_end"

    def last_assistant_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message.text
        return ""


@dataclass(frozen=True)
class MessageReceived:
    sender: str
    content: str
    kind: Literal["message_received"] = "message_received"


@dataclass(frozen=True)
class MessageSent:
    recipient: str
    content: str
    kind: Literal["message_sent"] = "message_sent"


HostEvent = Union[AgentStarted, AgentEnded, MessageReceived, MessageSent]

HOST_EVENT_NAMES = ("before_agent_start", "agent_end", "message_received", "message_sent")


def _str_field(source: Mapping[str, Any] | None, key: str) -> str:
    if not isinstance(source, Mapping):
        return ""
    value = source.get(key)
    return value if isinstance(value, str) else ""


def extract_text(content: Any) -> str:
    """Flatten a host message body into plain text.

    Accepts a string, a ``{"text": ...}`` part, or a list of parts. Other
    structured values are serialized as JSON; anything unserializable is "".
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, Mapping):
        text = content.get("text")
        if isinstance(text, str):
            return text
    if isinstance(content, (list, tuple)):
        # Content-part arrays: keep text parts, drop images and tool calls.
        texts: list[str] = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
                texts.append(part["text"])
        texts = [text for text in texts if text]
        if texts:
            return "\n".join(texts)
    try:
        return json.dumps(content)
    except (TypeError, ValueError):
        return ""


def _transcript(raw: Any) -> tuple[TranscriptMessage, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    messages: list[TranscriptMessage] = []
    for item in raw:
        if not isinstance(item, Mapping):
            continue
        role = item.get("role")
        if not isinstance(role, str):
            continue
        messages.append(TranscriptMessage(role=role, text=extract_text(item.get("content"))))
    return tuple(messages)


def parse_host_event(
    name: str,
    payload: Mapping[str, Any] | None,
    context: Mapping[str, Any] | None = None,
) -> HostEvent | None:
    # Unrecognized names or payload shapes yield None instead of raising.
    payload = payload if isinstance(payload, Mapping) else {}
    if name == "before_agent_start":
        provider = _str_field(context, "messageProvider") or None
        return AgentStarted(
            session_key=_str_field(context, "sessionKey"),
            prompt=extract_text(payload.get("prompt")),
            message_provider=provider,
        )
    if name == "agent_end":
        return AgentEnded(
            session_key=_str_field(context, "sessionKey"),
            messages=_transcript(payload.get("messages")),
        )
    if name == "message_received":
        return MessageReceived(sender=_str_field(payload, "from"), content=extract_text(payload.get("content")))
    if name == "message_sent":
        return MessageSent(recipient=_str_field(payload, "to"), content=extract_text(payload.get("content")))
    return None
