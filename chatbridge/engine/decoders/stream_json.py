"""Claude ``--output-format stream-json`` output.

Event types handled:
  assistant: full message; content blocks are text or tool_use
  content_block_start / content_block_delta / content_block_stop
  message_start / message_delta / message_stop
  tool_use / tool_result: top-level form used by some CLI versions
  system: permission prompts and diagnostics, forwarded opaquely
  result: cost/duration summary; closes the turn
"""
from __future__ import annotations

import json
import logging
from typing import Any

from chatbridge.adapters.events import (
    AssistantStart,
    ChatEvent,
    ContentBlockStop,
    MessageDelta,
    SystemNotice,
    TextDelta,
    ToolInputDelta,
    ToolResult,
    ToolUse,
    TurnEnd,
    TurnResult,
)
from chatbridge.engine.config import TOOL_OUTPUT_LIMIT
from chatbridge.engine.model_registry import FORMAT_STREAM_JSON

from .base import LineDecoder, truncate_tool_output

logger = logging.getLogger(__name__)


def _first_present(event: dict[str, Any], *keys: str) -> Any:
    """Field names drift between CLI versions; take the first one set."""
    for key in keys:
        value = event.get(key)
        if value is not None:
            return value
    return None


class StreamJsonDecoder(LineDecoder):
    format = FORMAT_STREAM_JSON

    def _decode_event(self, event: dict[str, Any]) -> list[ChatEvent]:
        etype = event.get("type", "")
        logger.debug(
            "[stream-json evt] type=%s subtype=%s keys=%s",
            etype, event.get("subtype", ""), ",".join(event.keys()),
        )

        if etype == "assistant" and event.get("message"):
            return self._assistant_message(event["message"])

        if etype == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                return [self._tool_use(block.get("id"), block.get("name"), block.get("input"))]
            return []

        if etype == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                text = delta.get("text") or ""
                self._accumulate(text)
                return [TextDelta(data=text)]
            if delta.get("type") == "input_json_delta":
                return [ToolInputDelta(data=delta.get("partial_json") or "")]
            return []

        if etype == "content_block_stop":
            return [ContentBlockStop(index=event.get("index"))]

        if etype == "message_delta":
            return [MessageDelta(data=event.get("delta") or {})]

        if etype in ("message_start", "message_stop"):
            return []

        if etype == "result":
            return self._result(event)

        if etype == "tool_use":
            return [self._tool_use(
                _first_present(event, "tool_use_id", "id"),
                event.get("name"),
                event.get("input"),
            )]

        if etype == "tool_result":
            return [self._tool_result(event)]

        if etype == "system":
            return [SystemNotice(data=event)]

        return []

    def _assistant_message(self, message: Any) -> list[ChatEvent]:
        events: list[ChatEvent] = [AssistantStart(data=message)]
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text" and block.get("text"):
                    self._accumulate(block["text"])
                    events.append(TextDelta(data=block["text"]))
                elif block.get("type") == "tool_use":
                    events.append(self._tool_use(
                        block.get("id"), block.get("name"), block.get("input"),
                    ))
        elif isinstance(content, str):
            self._accumulate(content)
            events.append(TextDelta(data=content))
        return events

    def _tool_use(self, tool_use_id: Any, name: Any, tool_input: Any) -> ToolUse:
        tool_input = tool_input or {}
        self._add_block({
            "type": "tool_use",
            "id": tool_use_id,
            "name": name,
            "input": tool_input,
        })
        return ToolUse(tool_use_id=tool_use_id, name=name, input=tool_input)

    def _tool_result(self, event: dict[str, Any]) -> ToolResult:
        raw = event.get("output")
        output = raw if isinstance(raw, str) else json.dumps(raw or "")
        is_error = bool(event.get("is_error") or False)
        self._add_block({
            "type": "tool_result",
            "id": event.get("tool_use_id"),
            "output": output[:TOOL_OUTPUT_LIMIT],
            "is_error": is_error,
        })
        return ToolResult(
            tool_use_id=event.get("tool_use_id"),
            output=truncate_tool_output(output),
            is_error=is_error,
        )

    def _result(self, event: dict[str, Any]) -> list[ChatEvent]:
        summary = TurnResult(
            cost=_first_present(event, "total_cost_usd", "cost_usd", "cost"),
            duration=_first_present(event, "duration_ms", "duration"),
            turns=_first_present(event, "num_turns", "turns"),
            session_id=event.get("session_id"),
        )
        self._complete_turn()
        return [summary, TurnEnd()]
