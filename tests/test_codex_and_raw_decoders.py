from __future__ import annotations

import json

from chatbridge.adapters.events import StreamText
from chatbridge.engine.decoders import CodexJsonDecoder, RawTextDecoder, strip_ansi, truncate_tool_output


def test_codex_emits_only_completed_agent_messages() -> None:
    decoder = CodexJsonDecoder()
    stream = "".join(json.dumps(e) + "\n" for e in (
        {"type": "thread.started", "thread_id": "th"},
        {"type": "item.started", "item": {"type": "agent_message"}},
        {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
        {"type": "item.completed", "item": {"type": "agent_message", "text": "Answer."}},
        {"type": "item.completed", "item": {"type": "agent_message", "text": ""}},
        {"type": "turn.completed"},
    ))
    assert decoder.feed(stream) == [StreamText(data="Answer.")]
    assert decoder.text == "Answer."


def test_codex_buffers_partial_lines() -> None:
    decoder = CodexJsonDecoder()
    line = json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "hi"}})
    assert decoder.feed(line[:10]) == []
    assert decoder.feed(line[10:] + "\n") == [StreamText(data="hi")]


def test_codex_skips_garbage() -> None:
    assert CodexJsonDecoder().feed("warning: something\n") == []


def test_raw_forwards_chunks_and_accumulates() -> None:
    decoder = RawTextDecoder()
    assert decoder.feed("\x1b[1mHello\x1b[0m ") == [StreamText(data="Hello ")]
    assert decoder.feed("world") == [StreamText(data="world")]
    assert decoder.flush() == []
    turn = decoder.take_turn()
    assert turn.text == "Hello world"
    assert decoder.text == ""


def test_raw_drops_chunks_that_were_only_escape_codes() -> None:
    assert RawTextDecoder().feed("\x1b[2K") == []


def test_strip_ansi_handles_osc_titles() -> None:
    assert strip_ansi("\x1b]0;title\x07text\x1b[31m!") == "text!"


def test_truncate_tool_output_leaves_short_output() -> None:
    assert truncate_tool_output("short") == "short"
    assert truncate_tool_output("abcdef", limit=3) == "abc\n... (truncated)"
