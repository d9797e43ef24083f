"""Canonical chat events sent to the browser, and the intents it sends back.

Every subprocess output format is translated into these dataclasses so the
client only ever sees one protocol. ``event_to_dict`` produces the wire form
(one JSON object per WebSocket message, discriminated by ``type``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ChatEvent:
    """Base event delivered to the client."""
    event_type: str = ""


@dataclass
class StreamText(ChatEvent):
    """Plain text chunk from a raw or codex-json agent."""
    event_type: str = "stream"
    data: str = ""


@dataclass
class AssistantStart(ChatEvent):
    event_type: str = "assistant_start"
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class TextDelta(ChatEvent):
    event_type: str = "text_delta"
    data: str = ""


@dataclass
class ToolUse(ChatEvent):
    event_type: str = "tool_use"
    tool_use_id: str | None = None
    name: str | None = None
    input: Any = field(default_factory=dict)


@dataclass
class ToolInputDelta(ChatEvent):
    event_type: str = "tool_input_delta"
    data: str = ""


@dataclass
class ToolResult(ChatEvent):
    event_type: str = "tool_result"
    tool_use_id: str | None = None
    output: str = ""
    is_error: bool = False


@dataclass
class ContentBlockStop(ChatEvent):
    event_type: str = "content_block_stop"
    index: int | None = None


@dataclass
class MessageDelta(ChatEvent):
    """Message-level delta (stop reason, usage) forwarded untouched."""
    event_type: str = "message_delta"
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class TurnResult(ChatEvent):
    """Cost/duration summary that closes an interactive turn."""
    event_type: str = "result"
    cost: float | None = None
    duration: float | None = None
    turns: int | None = None
    session_id: str | None = None


@dataclass
class TurnEnd(ChatEvent):
    event_type: str = "end"


@dataclass
class ErrorEvent(ChatEvent):
    event_type: str = "error"
    data: str = ""


@dataclass
class SystemNotice(ChatEvent):
    """Opaque notice: permission prompts, CLI diagnostics, stderr."""
    event_type: str = "system"
    data: Any = None


def event_to_dict(event: ChatEvent) -> dict[str, Any]:
    """Convert a typed event to its JSON wire form.

    ``None`` fields are omitted and ``event_type`` becomes ``type``.
    """
    d: dict[str, Any] = {"type": event.event_type}
    for f in event.__dataclass_fields__:
        if f == "event_type":
            continue
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    return d


# ── Inbound intents ──


@dataclass
class ChatRequest:
    conversation_id: str
    message: str
    model: str
    history: list[dict[str, Any]] = field(default_factory=list)
    images: list[Any] = field(default_factory=list)
    extra_args: Any = None
    system_prompt: str | None = None


@dataclass
class CancelRequest:
    pass


@dataclass
class ToolResponse:
    tool_use_id: str
    approved: bool = False


Intent = ChatRequest | CancelRequest | ToolResponse


def parse_intent(data: dict[str, Any]) -> Intent | None:
    """Map a decoded client message to an intent, or None if unrecognized."""
    kind = data.get("type")
    if kind == "chat":
        return ChatRequest(
            conversation_id=str(data.get("conversationId") or ""),
            message=str(data.get("message") or ""),
            model=str(data.get("model") or ""),
            history=list(data.get("history") or []),
            images=list(data.get("images") or []),
            extra_args=data.get("extraArgs"),
            system_prompt=data.get("systemPrompt") or None,
        )
    if kind == "cancel":
        return CancelRequest()
    if kind == "tool_response":
        return ToolResponse(
            tool_use_id=str(data.get("tool_use_id") or ""),
            approved=bool(data.get("approved")),
        )
    return None
