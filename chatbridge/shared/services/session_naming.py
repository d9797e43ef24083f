"""Generate short conversation titles with a one-shot agent call.

The agent CLI is run in print mode with a naming prompt on stdin.  Any
failure (missing executable, timeout, empty output) falls back to the
first characters of the conversation text.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shlex

from chatbridge.shared.services.process_cleanup import IS_WINDOWS, terminate_process_tree

logger = logging.getLogger(__name__)

NAMING_PROMPT = (
    "Summarize the topic of this conversation in at most ten words. "
    "Return ONLY the summary, nothing else. Do not use quotes.\n"
)

MAX_TITLE_LENGTH = 60
FALLBACK_LENGTH = 40

_FENCE_RE = re.compile(r"^```[A-Za-z]*\s*\n(?P<body>[\s\S]*?)\n```$")


def fallback_title(text: str) -> str:
    return text[:FALLBACK_LENGTH]


def clean_title(raw: str) -> str:
    """Strip fences, quotes and whitespace; cap at MAX_TITLE_LENGTH."""
    trimmed = raw.strip()
    fence = _FENCE_RE.match(trimmed)
    if fence:
        trimmed = fence.group("body").strip()
    trimmed = trimmed.strip("\"'`").strip()
    return trimmed[:MAX_TITLE_LENGTH]


async def summarize_title(
    text: str,
    *,
    command: str = "claude",
    model: str = "claude-haiku-4-5-20251001",
    timeout: float = 30.0,
) -> str:
    """Ask the agent for a short title; never raises."""
    argv = [*shlex.split(command), "-p", "--model", model]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=not IS_WINDOWS,
        )
    except (OSError, ValueError) as exc:
        logger.debug("Title agent %s unavailable: %s", command, exc)
        return fallback_title(text)

    try:
        stdout, _ = await asyncio.wait_for(
            proc.communicate((NAMING_PROMPT + text).encode("utf-8")),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.info("Title generation timed out after %.1fs", timeout)
        await terminate_process_tree(proc, force=True)
        await proc.wait()
        return fallback_title(text)

    title = clean_title(stdout.decode("utf-8", errors="replace"))
    if not title:
        logger.debug("Title agent exited %s with no output", proc.returncode)
        return fallback_title(text)
    return title
