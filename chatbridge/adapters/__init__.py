"""Adapters package - wire protocol between the browser and the engine.

Canonical outbound events and inbound client intents live here so the
engine never deals with raw WebSocket payloads.
"""
from __future__ import annotations

__all__ = [
    "ChatEvent",
    "ChatRequest",
    "CancelRequest",
    "ToolResponse",
    "event_to_dict",
    "parse_intent",
]

from chatbridge.adapters.events import (
    CancelRequest,
    ChatEvent,
    ChatRequest,
    ToolResponse,
    event_to_dict,
    parse_intent,
)
