"""Abstract base for agent output decoders.

A decoder turns the text an agent writes to stdout into canonical chat
events, and accumulates the assistant's reply (text plus structured
tool blocks) so the controller can persist it once the turn is over.
"""
from __future__ import annotations

import abc
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from chatbridge.adapters.events import ChatEvent
from chatbridge.engine.config import TOOL_OUTPUT_LIMIT

logger = logging.getLogger(__name__)

_ANSI_CSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07]*\x07")

TRUNCATION_MARKER = "\n... (truncated)"


def strip_ansi(text: str) -> str:
    """Remove CSI colour/cursor codes and OSC title sequences."""
    return _ANSI_OSC_RE.sub("", _ANSI_CSI_RE.sub("", text))


def truncate_tool_output(output: str, limit: int = TOOL_OUTPUT_LIMIT) -> str:
    """Client-facing form of a tool result."""
    if len(output) > limit:
        return output[:limit] + TRUNCATION_MARKER
    return output


@dataclass
class TurnOutput:
    """What the assistant produced during one turn."""
    text: str = ""
    blocks: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.blocks


class OutputDecoder(abc.ABC):
    """Incremental decoder for one agent process.

    ``feed`` may be called with arbitrarily split chunks; ``flush`` is
    called once when the process closes.
    """

    format: str = ""

    def __init__(self) -> None:
        self._text_parts: list[str] = []
        self._blocks: list[dict[str, Any]] = []
        self._completed: list[TurnOutput] = []

    def feed(self, chunk: str) -> list[ChatEvent]:
        """Decode one stdout chunk into events."""
        return self._decode_chunk(strip_ansi(chunk))

    def flush(self) -> list[ChatEvent]:
        """Decode anything still buffered at end of stream."""
        return []

    @abc.abstractmethod
    def _decode_chunk(self, chunk: str) -> list[ChatEvent]:
        """Decode an ANSI-stripped chunk."""

    # ── Turn accumulation ──

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def blocks(self) -> list[dict[str, Any]]:
        return list(self._blocks)

    def _accumulate(self, text: str) -> None:
        self._text_parts.append(text)

    def _add_block(self, block: dict[str, Any]) -> None:
        self._blocks.append(block)

    def take_turn(self) -> TurnOutput:
        """Return the current turn's output and start a fresh one."""
        output = TurnOutput(text=self.text, blocks=self._blocks)
        self._text_parts = []
        self._blocks = []
        return output

    def _complete_turn(self) -> None:
        """Mark a turn boundary seen in the stream itself."""
        self._completed.append(self.take_turn())

    def drain_completed(self) -> list[TurnOutput]:
        """Pop turns closed by an in-stream boundary since the last call."""
        completed, self._completed = self._completed, []
        return completed


class LineDecoder(OutputDecoder):
    """Line-delimited JSON: buffer partial lines across chunks."""

    def __init__(self) -> None:
        super().__init__()
        self._buffer = ""

    def _decode_chunk(self, chunk: str) -> list[ChatEvent]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        events: list[ChatEvent] = []
        for line in lines:
            events.extend(self._decode_line(line))
        return events

    def flush(self) -> list[ChatEvent]:
        remainder, self._buffer = self._buffer, ""
        return self._decode_line(remainder)

    def _decode_line(self, line: str) -> list[ChatEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            event = json.loads(stripped)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.info(
                "[%s parse error] %s | line: %s", self.format, exc, stripped[:200],
            )
            return []
        if not isinstance(event, dict):
            logger.debug("[%s] skipping non-object line: %s", self.format, stripped[:200])
            return []
        return self._decode_event(event)

    @abc.abstractmethod
    def _decode_event(self, event: dict[str, Any]) -> list[ChatEvent]:
        """Translate one parsed JSON object."""
