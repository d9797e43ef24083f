"""Plain-text agents: every chunk is forwarded as-is."""
from __future__ import annotations

from chatbridge.adapters.events import ChatEvent, StreamText
from chatbridge.engine.model_registry import FORMAT_RAW

from .base import OutputDecoder


class RawTextDecoder(OutputDecoder):
    format = FORMAT_RAW

    def _decode_chunk(self, chunk: str) -> list[ChatEvent]:
        if not chunk:
            return []
        self._accumulate(chunk)
        return [StreamText(data=chunk)]
