"""Output decoders, one per agent output format."""
from __future__ import annotations

from chatbridge.engine.model_registry import (
    FORMAT_CODEX_JSON,
    FORMAT_RAW,
    FORMAT_STREAM_JSON,
)

from .base import OutputDecoder, TurnOutput, strip_ansi, truncate_tool_output
from .codex_json import CodexJsonDecoder
from .raw import RawTextDecoder
from .stream_json import StreamJsonDecoder

_DECODERS: dict[str, type[OutputDecoder]] = {
    FORMAT_RAW: RawTextDecoder,
    FORMAT_STREAM_JSON: StreamJsonDecoder,
    FORMAT_CODEX_JSON: CodexJsonDecoder,
}


def build_decoder(fmt: str) -> OutputDecoder:
    """Return a fresh decoder for ``fmt``; unknown formats decode as raw."""
    return _DECODERS.get(fmt, RawTextDecoder)()


__all__ = [
    "OutputDecoder",
    "TurnOutput",
    "RawTextDecoder",
    "StreamJsonDecoder",
    "CodexJsonDecoder",
    "build_decoder",
    "strip_ansi",
    "truncate_tool_output",
]
