from __future__ import annotations

import json

from chatbridge.adapters.events import (
    AssistantStart,
    ContentBlockStop,
    MessageDelta,
    SystemNotice,
    TextDelta,
    ToolInputDelta,
    ToolResult,
    ToolUse,
    TurnEnd,
    TurnResult,
    event_to_dict,
)
from chatbridge.engine.decoders import StreamJsonDecoder, build_decoder
from chatbridge.engine.decoders.base import TRUNCATION_MARKER


def _lines(*events: dict) -> str:
    return "".join(json.dumps(e) + "\n" for e in events)


_STREAM = _lines(
    {"type": "system", "subtype": "init", "session_id": "s1"},
    {"type": "assistant", "message": {"content": [
        {"type": "text", "text": "Let me check."},
        {"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}},
    ]}},
    {"type": "tool_result", "tool_use_id": "t1", "output": "a.txt\nb.txt"},
    {"type": "content_block_delta", "delta": {"type": "text_delta", "text": " Done"}},
    {"type": "result", "total_cost_usd": 0.01, "duration_ms": 1200, "num_turns": 2, "session_id": "s1"},
)


def _decode_all(chunks: list[str]) -> list[dict]:
    decoder = StreamJsonDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.flush())
    return [event_to_dict(e) for e in events]


def test_arbitrary_chunk_splits_yield_identical_events() -> None:
    whole = _decode_all([_STREAM])
    assert whole
    for size in (1, 3, 7, 64):
        chunks = [_STREAM[i:i + size] for i in range(0, len(_STREAM), size)]
        assert _decode_all(chunks) == whole


def test_assistant_message_emits_start_text_and_tool_use() -> None:
    decoder = StreamJsonDecoder()
    events = decoder.feed(_lines({"type": "assistant", "message": {"content": [
        {"type": "text", "text": "Hi"},
        {"type": "tool_use", "id": "t1", "name": "Read"},
    ]}}))
    assert isinstance(events[0], AssistantStart)
    assert events[1] == TextDelta(data="Hi")
    assert events[2] == ToolUse(tool_use_id="t1", name="Read", input={})
    assert decoder.text == "Hi"
    assert decoder.blocks == [{"type": "tool_use", "id": "t1", "name": "Read", "input": {}}]


def test_assistant_string_content() -> None:
    decoder = StreamJsonDecoder()
    events = decoder.feed(_lines({"type": "assistant", "message": {"content": "plain"}}))
    assert events[1] == TextDelta(data="plain")
    assert decoder.text == "plain"


def test_content_block_events() -> None:
    decoder = StreamJsonDecoder()
    events = decoder.feed(_lines(
        {"type": "content_block_start", "content_block": {"type": "tool_use", "id": "t2", "name": "Edit"}},
        {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": "{\"a\""}},
        {"type": "content_block_stop", "index": 1},
        {"type": "message_start"},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
        {"type": "message_stop"},
    ))
    assert events == [
        ToolUse(tool_use_id="t2", name="Edit", input={}),
        ToolInputDelta(data="{\"a\""),
        ContentBlockStop(index=1),
        MessageDelta(data={"stop_reason": "end_turn"}),
    ]


def test_top_level_tool_use_falls_back_to_id() -> None:
    decoder = StreamJsonDecoder()
    events = decoder.feed(_lines({"type": "tool_use", "id": "t3", "name": "Grep", "input": {"q": 1}}))
    assert events == [ToolUse(tool_use_id="t3", name="Grep", input={"q": 1})]


def test_result_is_followed_by_end_and_resets_accumulators() -> None:
    decoder = StreamJsonDecoder()
    decoder.feed(_lines({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "ok"}}))
    events = decoder.feed(_lines({"type": "result", "cost_usd": 0.5, "duration": 10, "turns": 1}))
    assert events == [TurnResult(cost=0.5, duration=10, turns=1), TurnEnd()]
    assert decoder.text == ""
    assert decoder.blocks == []
    completed = decoder.drain_completed()
    assert len(completed) == 1
    assert completed[0].text == "ok"
    assert decoder.drain_completed() == []


def test_large_tool_output_is_truncated_for_client() -> None:
    decoder = StreamJsonDecoder()
    events = decoder.feed(_lines({"type": "tool_result", "tool_use_id": "t1", "output": "x" * 60000}))
    result = events[0]
    assert isinstance(result, ToolResult)
    assert result.output == "x" * 51200 + TRUNCATION_MARKER
    assert decoder.blocks[0]["output"] == "x" * 51200


def test_non_string_tool_output_is_json_encoded() -> None:
    decoder = StreamJsonDecoder()
    events = decoder.feed(_lines({"type": "tool_result", "tool_use_id": "t1", "output": {"rows": 2}, "is_error": True}))
    assert events == [ToolResult(tool_use_id="t1", output='{"rows": 2}', is_error=True)]


def test_system_events_are_forwarded_opaquely() -> None:
    event = {"type": "system", "subtype": "permission_request", "tool": "Bash"}
    events = StreamJsonDecoder().feed(_lines(event))
    assert events == [SystemNotice(data=event)]


def test_malformed_lines_are_skipped() -> None:
    decoder = StreamJsonDecoder()
    events = decoder.feed("not json\n[1, 2]\n" + _lines({"type": "content_block_stop", "index": 0}))
    assert events == [ContentBlockStop(index=0)]


def test_ansi_sequences_are_stripped_before_parsing() -> None:
    line = "\x1b[32m" + json.dumps({"type": "content_block_stop", "index": 4}) + "\x1b[0m\n"
    assert StreamJsonDecoder().feed(line) == [ContentBlockStop(index=4)]


def test_flush_decodes_unterminated_last_line() -> None:
    decoder = StreamJsonDecoder()
    assert decoder.feed(json.dumps({"type": "content_block_stop", "index": 2})) == []
    assert decoder.flush() == [ContentBlockStop(index=2)]


def test_unknown_format_builds_raw_decoder() -> None:
    assert build_decoder("stream-json").format == "stream-json"
    assert build_decoder("does-not-exist").format == "raw"
