"""Per-connection chat session.

Receives intents from one browser connection, drives the agent
subprocess through ``ProcessSupervisor``, translates its output with a
decoder, forwards canonical events and persists finished turns.

State machine: Idle → Running → Idle.  ``cancel`` returns to Idle
immediately and discards the pending turn.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatbridge.adapters.events import (
    CancelRequest,
    ChatEvent,
    ChatRequest,
    ErrorEvent,
    Intent,
    SystemNotice,
    ToolResponse,
    TurnEnd,
    event_to_dict,
)
from chatbridge.engine.config import STDERR_CHUNK_LIMIT
from chatbridge.engine.decoders import OutputDecoder, TurnOutput, build_decoder
from chatbridge.engine.errors import (
    InvalidConversationIdError,
    InvalidExtraArgsError,
    ProcessSpawnError,
    UnknownModelError,
)
from chatbridge.engine.model_registry import ModelRegistry, ResolvedModel
from chatbridge.engine.process_supervisor import ProcessHandle, ProcessSupervisor
from chatbridge.engine.prompt_builder import build_prompt
from chatbridge.shared.models.conversation import Turn
from chatbridge.shared.services.transcript_store import (
    TranscriptStore,
    validate_conversation_id,
)

logger = logging.getLogger(__name__)

EventSink = Callable[[dict[str, Any]], Awaitable[None]]

READ_CHUNK_SIZE = 65536


def validate_extra_args(value: Any) -> list[str]:
    """Absent → []; otherwise it must be a list of non-empty strings."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidExtraArgsError(value)
    for arg in value:
        if not isinstance(arg, str) or not arg.strip():
            raise InvalidExtraArgsError(value)
    return list(value)


def user_message_line(prompt: str) -> dict[str, Any]:
    return {"type": "user", "message": {"role": "user", "content": prompt}}


def tool_response_line(tool_use_id: str, approved: bool) -> dict[str, Any]:
    block: dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": "approved" if approved else "rejected",
    }
    if not approved:
        block["is_error"] = True
    return {"type": "user", "message": {"role": "user", "content": [block]}}


def interactive_args(model_id: str, permission_mode: str, system_prompt: str | None) -> list[str]:
    args = [
        "--output-format", "stream-json",
        "--input-format", "stream-json",
        "--verbose",
        "--permission-mode", permission_mode,
        "--model", model_id,
    ]
    if system_prompt:
        args += ["--system-prompt", system_prompt]
    return args


@dataclass
class PendingTurn:
    """The user turn currently being answered."""
    conversation_id: str
    model_id: str
    message: str
    images: list[Any] = field(default_factory=list)


class SessionController:
    """Chat session state for a single WebSocket connection."""

    def __init__(
        self,
        send: EventSink,
        registry: ModelRegistry,
        store: TranscriptStore,
        *,
        agent_cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
        permission_mode: str = "bypassPermissions",
        kill_grace_seconds: float = 3.0,
    ) -> None:
        self._send = send
        self._registry = registry
        self._store = store
        self._agent_cwd = agent_cwd
        self._env = env
        self._permission_mode = permission_mode
        self._supervisor = ProcessSupervisor(kill_grace_seconds=kill_grace_seconds)
        self._decoder: OutputDecoder | None = None
        self._turn: PendingTurn | None = None

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def running(self) -> bool:
        return self._supervisor.active is not None

    @property
    def pending_turn(self) -> PendingTurn | None:
        return self._turn

    async def handle(self, intent: Intent) -> None:
        if isinstance(intent, ChatRequest):
            await self.handle_chat(intent)
        elif isinstance(intent, CancelRequest):
            await self.cancel()
        elif isinstance(intent, ToolResponse):
            await self.handle_tool_response(intent)

    # ── Intents ──

    async def handle_chat(self, request: ChatRequest) -> None:
        resolved = self._registry.resolve(request.model)
        if resolved is None:
            logger.info("Chat for unknown model %r rejected", request.model)
            await self._emit(ErrorEvent(data=str(UnknownModelError(request.model))))
            return
        try:
            validate_conversation_id(request.conversation_id)
            extra_args = validate_extra_args(request.extra_args)
        except (InvalidConversationIdError, InvalidExtraArgsError) as exc:
            logger.info("Chat rejected: %s", exc)
            await self._emit(ErrorEvent(data=str(exc)))
            return

        logger.info(
            "[chat] conversation=%s model=%s history=%d msg=%s",
            request.conversation_id, request.model, len(request.history),
            request.message[:50],
        )

        if self._supervisor.can_reuse(
            request.conversation_id, request.model, resolved.is_interactive,
        ):
            await self._continue_interactive(request)
            return

        await self._start_process(request, resolved, extra_args)

    async def cancel(self) -> None:
        if self._turn is not None:
            logger.info("Cancelling turn for %s; nothing will be saved", self._turn.conversation_id)
        self._turn = None
        self._decoder = None
        await self._supervisor.cancel()

    async def handle_tool_response(self, response: ToolResponse) -> None:
        handle = self._supervisor.active
        if handle is None or not handle.interactive or not handle.stdin_open:
            logger.info(
                "Ignoring tool_response for %s: no interactive process", response.tool_use_id,
            )
            return
        logger.info(
            "Tool %s %s", response.tool_use_id, "approved" if response.approved else "rejected",
        )
        await self._supervisor.send_line(
            handle, tool_response_line(response.tool_use_id, response.approved),
        )

    async def shutdown(self) -> None:
        """Connection closed: kill the process, drop the pending turn."""
        self._turn = None
        self._decoder = None
        await self._supervisor.shutdown()

    async def wait_for_exit(self) -> None:
        """Wait until the active process's readers and exit handling finish."""
        handle = self._supervisor.active
        if handle is None:
            return
        await asyncio.gather(*handle.tasks, return_exceptions=True)

    # ── Process lifecycle ──

    async def _continue_interactive(self, request: ChatRequest) -> None:
        handle = self._supervisor.active
        assert handle is not None
        logger.info("[%s] reusing process pid=%s for %s", handle.command, handle.pid, request.conversation_id)
        if self._turn is not None and self._decoder is not None:
            # Previous turn never saw its result event.
            await self._persist_turn(self._decoder.take_turn())
        self._turn = PendingTurn(
            conversation_id=request.conversation_id,
            model_id=request.model,
            message=request.message,
            images=list(request.images),
        )
        # The agent keeps its own context; only the new message is sent.
        prompt = build_prompt([], request.message, request.images)
        if not await self._supervisor.send_line(handle, user_message_line(prompt)):
            self._turn = None
            await self._emit(ErrorEvent(data=f"Failed to send message to {handle.command}"))

    async def _start_process(
        self,
        request: ChatRequest,
        resolved: ResolvedModel,
        extra_args: list[str],
    ) -> None:
        # Anything still pending belongs to the process about to be replaced.
        self._turn = None
        self._decoder = None

        prompt = build_prompt(request.history, request.message, request.images)
        prompt_file: Path | None = None
        if resolved.is_interactive:
            args = interactive_args(request.model, self._permission_mode, request.system_prompt)
        else:
            prompt_file = _write_prompt_file(prompt)
            args = resolved.render_args(request.model, str(prompt_file))
        argv = resolved.argv_prefix() + args + extra_args
        logger.info("[%s] model=%s args=%s", resolved.command, request.model, argv[1:])

        try:
            handle = await self._supervisor.replace(
                argv,
                conversation_id=request.conversation_id,
                model_id=request.model,
                interactive=resolved.is_interactive,
                env=self._env,
                cwd=self._agent_cwd,
                prompt_file=prompt_file,
            )
        except ProcessSpawnError as exc:
            logger.warning("%s", exc)
            if prompt_file is not None:
                _remove_prompt_file(prompt_file)
            await self._emit(ErrorEvent(data=str(exc)))
            return

        decoder = build_decoder(resolved.format)
        self._decoder = decoder
        self._turn = PendingTurn(
            conversation_id=request.conversation_id,
            model_id=request.model,
            message=request.message,
            images=list(request.images),
        )

        stdout_task = asyncio.create_task(self._read_stdout(handle, decoder))
        stderr_task = asyncio.create_task(self._read_stderr(handle))
        exit_task = asyncio.create_task(self._watch_exit(handle, decoder, stdout_task, stderr_task))
        for task in (stdout_task, stderr_task, exit_task):
            task.add_done_callback(_log_task_failure)
            handle.tasks.append(task)

        if resolved.is_interactive:
            await self._supervisor.send_line(handle, user_message_line(prompt))
        else:
            await self._supervisor.send_and_close(handle, prompt)

    async def _read_stdout(self, handle: ProcessHandle, decoder: OutputDecoder) -> None:
        stream = handle.process.stdout
        assert stream is not None
        utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            if not self._supervisor.is_current(handle.generation):
                return
            text = utf8.decode(data)
            if not text:
                continue
            logger.debug("[%s stdout] %s", handle.command, text[:300])
            await self._dispatch(decoder, decoder.feed(text))
        tail = utf8.decode(b"", final=True)
        if tail and self._supervisor.is_current(handle.generation):
            await self._dispatch(decoder, decoder.feed(tail))

    async def _read_stderr(self, handle: ProcessHandle) -> None:
        stream = handle.process.stderr
        assert stream is not None
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            if not self._supervisor.is_current(handle.generation):
                return
            text = data.decode("utf-8", errors="replace")[:STDERR_CHUNK_LIMIT]
            logger.info("[%s stderr] %s", handle.command, text)
            await self._emit(SystemNotice(data={"subtype": "stderr", "text": text}))

    async def _watch_exit(
        self,
        handle: ProcessHandle,
        decoder: OutputDecoder,
        stdout_task: asyncio.Task,
        stderr_task: asyncio.Task,
    ) -> None:
        # Pipes drain before the exit is handled so no output is lost.
        await asyncio.gather(stdout_task, stderr_task, return_exceptions=True)
        code = await handle.process.wait()
        try:
            stale = not self._supervisor.release(handle)
            logger.info(
                "[%s] exited with code %s%s",
                handle.command, code, " (stale, ignored)" if stale else "",
            )
            if stale:
                return
            await self._dispatch(decoder, decoder.flush())
            if decoder is self._decoder:
                self._decoder = None
            try:
                if self._turn is not None:
                    await self._persist_turn(decoder.take_turn())
            finally:
                await self._emit(TurnEnd())
        finally:
            handle.cleanup()

    # ── Events and persistence ──

    async def _dispatch(self, decoder: OutputDecoder, events: list[ChatEvent]) -> None:
        for event in events:
            if isinstance(event, TurnEnd):
                for output in decoder.drain_completed():
                    await self._persist_turn(output)
            await self._emit(event)

    async def _emit(self, event: ChatEvent) -> None:
        await self._send(event_to_dict(event))

    async def _persist_turn(self, output: TurnOutput) -> None:
        """Save the finished exchange; a store failure is reported, not raised."""
        turn, self._turn = self._turn, None
        if turn is None:
            logger.debug("Turn boundary with no pending turn; nothing to save")
            return
        try:
            self._store.append_exchange(
                turn.conversation_id,
                model=turn.model_id,
                user=Turn.user(turn.message, turn.images),
                assistant=Turn.assistant(output.text, output.blocks),
            )
        except (OSError, ValueError, TypeError) as exc:
            logger.exception("Failed to save turn to conversation %s", turn.conversation_id)
            await self._emit(ErrorEvent(data=f"Failed to save conversation {turn.conversation_id}: {exc}"))


def _write_prompt_file(prompt: str) -> Path:
    """Write the prompt to a fresh private temp directory."""
    tmp_dir = Path(tempfile.mkdtemp(prefix="chat-"))
    prompt_file = tmp_dir / "prompt.txt"
    prompt_file.write_text(prompt, encoding="utf-8")
    return prompt_file


def _remove_prompt_file(prompt_file: Path) -> None:
    try:
        prompt_file.unlink(missing_ok=True)
        prompt_file.parent.rmdir()
    except OSError as exc:
        logger.debug("Failed to remove prompt file %s: %s", prompt_file, exc)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Session reader task failed", exc_info=exc)
