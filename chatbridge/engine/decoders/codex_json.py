"""Codex ``exec --json`` output.

Codex emits JSONL lifecycle events (thread.started, turn.started,
item.started, item.completed, turn.completed, error).  Only finished
``agent_message`` items carry reply text; everything else is ignored.
"""
from __future__ import annotations

from typing import Any

from chatbridge.adapters.events import ChatEvent, StreamText
from chatbridge.engine.model_registry import FORMAT_CODEX_JSON

from .base import LineDecoder


class CodexJsonDecoder(LineDecoder):
    format = FORMAT_CODEX_JSON

    def _decode_event(self, event: dict[str, Any]) -> list[ChatEvent]:
        if event.get("type") != "item.completed":
            return []
        item = event.get("item")
        if not isinstance(item, dict) or item.get("type") != "agent_message":
            return []
        text = item.get("text")
        if not text:
            return []
        self._accumulate(text)
        return [StreamText(data=text)]
