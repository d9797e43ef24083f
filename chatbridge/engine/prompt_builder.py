"""Build the text payload sent to an agent for one turn.

Stateless agents get the whole conversation replayed as a transcript;
interactive agents remember earlier turns and only receive the new
message (callers pass an empty history for them).
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

HISTORY_PREAMBLE = "The following is our conversation history:\n\n"
LATEST_ONLY_SUFFIX = "\n\nPlease respond to my latest message only."


def image_path(image: Any) -> str:
    """Accept either a bare path or an upload record with a ``path`` key."""
    if isinstance(image, dict):
        return str(image.get("path") or "")
    return str(image)


def build_prompt(
    history: Sequence[dict[str, Any]] | None,
    new_message: str,
    images: Sequence[Any] | None = None,
) -> str:
    """Render history + new message + image paths into a single prompt."""
    if history:
        parts = [HISTORY_PREAMBLE]
        for turn in history:
            speaker = "Human" if turn.get("role") == "user" else "Assistant"
            parts.append(f"{speaker}: {turn.get('content', '')}\n\n")
        parts.append(f"Human: {new_message}")
        prompt = "".join(parts)
    else:
        prompt = new_message

    paths = [p for p in (image_path(img) for img in images or ()) if p]
    if paths:
        # The CLI agents read image files from paths mentioned in the prompt.
        prompt += "\n\n" + "\n".join(paths)

    if history:
        prompt += LATEST_ONLY_SUFFIX
    return prompt
