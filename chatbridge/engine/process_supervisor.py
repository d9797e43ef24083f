"""Owns the single agent subprocess of one connection.

Every process instance is tagged with the generation it was started
under.  Readers compare their generation with ``current`` before acting,
so output or exit notifications from a process that has already been
replaced or cancelled are dropped instead of leaking into the next turn.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatbridge.engine.errors import ProcessSpawnError
from chatbridge.shared.services.process_cleanup import (
    IS_WINDOWS,
    ensure_tree_stopped,
    terminate_process_tree,
)

logger = logging.getLogger(__name__)


@dataclass
class ProcessHandle:
    """One spawned agent process and what it is bound to."""
    process: asyncio.subprocess.Process
    generation: int
    conversation_id: str
    model_id: str
    interactive: bool
    command: str
    prompt_file: Path | None = None
    killed: bool = False
    tasks: list[asyncio.Task] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdin_open(self) -> bool:
        stdin = self.process.stdin
        return stdin is not None and not stdin.is_closing()

    @property
    def alive(self) -> bool:
        return not self.killed and self.process.returncode is None

    def cleanup(self) -> None:
        """Delete the per-turn prompt file and its private temp directory."""
        if self.prompt_file is None:
            return
        prompt_file, self.prompt_file = self.prompt_file, None
        try:
            prompt_file.unlink(missing_ok=True)
            shutil.rmtree(prompt_file.parent, ignore_errors=True)
        except OSError as exc:
            logger.debug("Failed to remove prompt file %s: %s", prompt_file, exc)


class ProcessSupervisor:
    """Start / reuse / kill the connection's agent process."""

    def __init__(self, *, kill_grace_seconds: float = 3.0) -> None:
        self._active: ProcessHandle | None = None
        self._generation = 0
        self._kill_grace_seconds = kill_grace_seconds
        # Reaper tasks escalating SIGTERM → SIGKILL for detached processes.
        self._reapers: set[asyncio.Task] = set()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def active(self) -> ProcessHandle | None:
        return self._active

    @property
    def bound_conversation_id(self) -> str | None:
        return self._active.conversation_id if self._active else None

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def can_reuse(self, conversation_id: str, model_id: str, interactive: bool) -> bool:
        """True if the running interactive process can take the next turn."""
        handle = self._active
        return (
            interactive
            and handle is not None
            and handle.interactive
            and handle.alive
            and handle.stdin_open
            and handle.conversation_id == conversation_id
            and handle.model_id == model_id
        )

    async def replace(
        self,
        argv: list[str],
        *,
        conversation_id: str,
        model_id: str,
        interactive: bool,
        env: dict[str, str] | None = None,
        cwd: str | Path | None = None,
        prompt_file: Path | None = None,
    ) -> ProcessHandle:
        """Kill any running process, then spawn and bind a new one.

        Raises ProcessSpawnError if the executable cannot be started; the
        generation has still moved on, so nothing from the old process
        can surface afterwards.
        """
        await self._detach_active()
        self._generation += 1
        generation = self._generation

        extra: dict[str, Any] = {}
        if not IS_WINDOWS:
            # Own session → killpg reaches every helper the agent spawns.
            extra["start_new_session"] = True
        try:
            # Argument vector, never a shell string.
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=str(cwd) if cwd is not None else None,
                **extra,
            )
        except (OSError, ValueError) as exc:
            raise ProcessSpawnError(argv[0] if argv else "<empty>", str(exc)) from exc

        handle = ProcessHandle(
            process=proc,
            generation=generation,
            conversation_id=conversation_id,
            model_id=model_id,
            interactive=interactive,
            command=argv[0],
            prompt_file=prompt_file,
        )
        self._active = handle
        logger.info(
            "Spawned %s pid=%s generation=%d conversation=%s interactive=%s",
            handle.command, proc.pid, generation, conversation_id, interactive,
        )
        return handle

    async def cancel(self) -> bool:
        """Kill the active process without a replacement."""
        if self._active is None:
            return False
        await self._detach_active()
        self._generation += 1
        return True

    async def shutdown(self) -> None:
        """Connection closed: kill whatever is running and wait for it to exit."""
        await self.cancel()
        if self._reapers:
            await asyncio.gather(*self._reapers, return_exceptions=True)

    def release(self, handle: ProcessHandle) -> bool:
        """Clear the binding after a natural exit.

        Returns False when the handle is stale (already replaced or
        cancelled), in which case the caller must not act on its exit.
        """
        if not self.is_current(handle.generation) or self._active is not handle:
            return False
        self._active = None
        return True

    async def send_line(self, handle: ProcessHandle, payload: dict[str, Any]) -> bool:
        """Write one JSON line to an interactive process's stdin."""
        if not handle.stdin_open:
            logger.info("stdin of pid=%s is closed; dropping %s line", handle.pid, payload.get("type"))
            return False
        data = (json.dumps(payload) + "\n").encode("utf-8")
        try:
            handle.process.stdin.write(data)
            await handle.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Failed writing to pid=%s stdin: %s", handle.pid, exc)
            return False
        return True

    async def send_and_close(self, handle: ProcessHandle, text: str) -> bool:
        """Pipe a one-shot prompt to stdin, then close it."""
        stdin = handle.process.stdin
        if stdin is None:
            return False
        try:
            stdin.write(text.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning("Failed writing prompt to pid=%s: %s", handle.pid, exc)
            return False
        finally:
            stdin.close()
        return True

    async def _detach_active(self) -> None:
        """Detach the active process from event delivery, then kill its tree."""
        old = self._active
        if old is None:
            return
        self._active = None
        old.killed = True

        current = asyncio.current_task()
        for task in old.tasks:
            if task is not current and not task.done():
                task.cancel()
        if old.process.stdin is not None and not old.process.stdin.is_closing():
            old.process.stdin.close()

        try:
            await terminate_process_tree(old.process)
        except OSError as exc:
            logger.warning("Failed to terminate pid=%s: %s", old.pid, exc)

        reaper = asyncio.create_task(self._reap(old))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _reap(self, handle: ProcessHandle) -> None:
        try:
            await ensure_tree_stopped(handle.process, self._kill_grace_seconds)
            logger.info(
                "Detached process pid=%s (generation %d) exited with code %s",
                handle.pid, handle.generation, handle.process.returncode,
            )
        finally:
            handle.cleanup()
