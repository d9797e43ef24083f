"""HTTP + WebSocket server for chatbridge.

Serves the browser client's static files, the REST endpoints for
conversations, uploads and preferences, and a ``/ws`` endpoint where
each connection gets its own ``SessionController``.

Usage:
    chatbridge [--port PORT] [--data-dir DIR]
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
import re
import time
import uuid
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType, web

from chatbridge.adapters.events import parse_intent
from chatbridge.engine.config import BridgeConfig
from chatbridge.engine.errors import InvalidConversationIdError
from chatbridge.engine.model_registry import ModelRegistry
from chatbridge.engine.session_controller import SessionController
from chatbridge.shared.services.durable_write import atomic_write_bytes, atomic_write_text
from chatbridge.shared.services.preferences import CliParams
from chatbridge.shared.services.session_naming import summarize_title
from chatbridge.shared.services.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 50 * 1024 * 1024
INSTRUCTIONS_FILE = "CLAUDE.md"

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_SAFE_EXT_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


class BridgeServer:
    """aiohttp application wiring the REST API and the chat WebSocket."""

    def __init__(self, config: BridgeConfig) -> None:
        self._config = config
        self._registry = ModelRegistry(config.models_path)
        self._store = TranscriptStore(config.conversations_dir)
        self._cli_params = CliParams(config.cli_params_path)
        config.uploads_dir.mkdir(parents=True, exist_ok=True)
        self._websockets: set[web.WebSocketResponse] = set()
        self._app = web.Application(
            middlewares=[self._request_logging_middleware],
            client_max_size=MAX_BODY_BYTES,
        )
        self._app.on_shutdown.append(self._on_shutdown)
        self._setup_routes()
        logger.info(
            "BridgeServer init host=%s port=%s data_dir=%s models=%s pid=%s",
            config.host, config.port, config.data_dir, config.models_path, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    @property
    def store(self) -> TranscriptStore:
        return self._store

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            logger.info(
                "HTTP %s %s req=%s status=%s", request.method, request.path_qs, req_id, exc.status,
            )
            raise
        except Exception:
            logger.exception("HTTP %s %s req=%s failed", request.method, request.path_qs, req_id)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/ws", self._handle_ws)
        r.add_get("/api/models", self._handle_models)
        # Conversations
        r.add_get("/api/conversations", self._handle_list_conversations)
        r.add_get("/api/conversations/{id}", self._handle_get_conversation)
        r.add_put("/api/conversations/{id}", self._handle_put_conversation)
        r.add_delete("/api/conversations/{id}", self._handle_delete_conversation)
        # Uploads + preferences
        r.add_post("/api/upload", self._handle_upload)
        r.add_get("/api/cli-params", self._handle_get_cli_params)
        r.add_put("/api/cli-params", self._handle_put_cli_params)
        r.add_get("/api/claude-md", self._handle_get_instructions)
        r.add_put("/api/claude-md", self._handle_put_instructions)
        r.add_post("/api/summarize", self._handle_summarize)
        # Static files
        r.add_static("/uploads/", self._config.uploads_dir)
        static_dir = self._config.static_dir
        if static_dir is not None and static_dir.is_dir():
            r.add_get("/", self._handle_index)
            r.add_static("/", static_dir)
        else:
            logger.info("Static directory %s not found; serving API only", static_dir)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Run until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        await site.start()
        logger.info("Chat running at http://%s:%d", self._config.host, self._config.port)
        logger.info("Models config: %s", self._registry.path)
        for label, models in self._registry.list_models().items():
            logger.info("  %s: %s", label, ", ".join(models))
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    async def _on_shutdown(self, app: web.Application) -> None:
        for ws in list(self._websockets):
            await ws.close(code=1001, message=b"Server shutdown")

    # ── WebSocket ──

    async def _safe_send_json(self, ws: web.WebSocketResponse, data: dict[str, Any]) -> bool:
        """Send to the socket unless it is gone; never raises into the caller."""
        if ws.closed:
            return False
        try:
            await ws.send_json(data)
            return True
        except (ConnectionResetError, ConnectionAbortedError, RuntimeError) as exc:
            logger.debug("Dropping %s event for closed socket: %s", data.get("type"), exc)
            return False

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(max_msg_size=MAX_BODY_BYTES)
        await ws.prepare(request)
        self._websockets.add(ws)

        async def send(event: dict[str, Any]) -> None:
            await self._safe_send_json(ws, event)

        controller = SessionController(
            send,
            self._registry,
            self._store,
            agent_cwd=self._config.agent_cwd,
            permission_mode=self._config.permission_mode,
            kill_grace_seconds=self._config.kill_grace_seconds,
        )
        logger.info("WebSocket connected from %s", request.remote)
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_ws_text(controller, send, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                    break
        finally:
            await controller.shutdown()
            self._websockets.discard(ws)
            logger.info("WebSocket from %s closed", request.remote)
        return ws

    async def _handle_ws_text(self, controller: SessionController, send, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await send({"type": "error", "data": "Invalid JSON"})
            return
        if not isinstance(data, dict):
            await send({"type": "error", "data": "Invalid JSON"})
            return
        intent = parse_intent(data)
        if intent is None:
            logger.info("Ignoring WebSocket message of type %r", data.get("type"))
            return
        await controller.handle(intent)

    # ── Models ──

    async def _handle_models(self, request: web.Request) -> web.Response:
        return web.json_response(self._registry.load())

    # ── Conversations ──

    async def _handle_list_conversations(self, request: web.Request) -> web.Response:
        try:
            return web.json_response(self._store.list_summaries())
        except OSError as exc:
            logger.warning("Listing conversations failed: %s", exc)
            return web.json_response([])

    async def _handle_get_conversation(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        try:
            data = self._store.load_raw(conversation_id)
        except InvalidConversationIdError:
            return web.json_response({"error": "Invalid id"}, status=400)
        except ValueError as exc:
            return web.json_response({"error": f"Corrupt conversation: {exc}"}, status=500)
        if data is None:
            return web.json_response({"error": "Not found"}, status=404)
        return web.json_response(data)

    async def _handle_put_conversation(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Conversation must be an object"}, status=400)
        try:
            replaced = self._store.replace(conversation_id, body)
        except InvalidConversationIdError:
            return web.json_response({"error": "Invalid id"}, status=400)
        if not replaced:
            return web.json_response({"error": "Not found"}, status=404)
        return web.json_response({"ok": True})

    async def _handle_delete_conversation(self, request: web.Request) -> web.Response:
        try:
            self._store.delete(request.match_info["id"])
        except InvalidConversationIdError:
            return web.json_response({"error": "Invalid id"}, status=400)
        return web.json_response({"ok": True})

    # ── Uploads ──

    async def _handle_upload(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        data = body.get("data") if isinstance(body, dict) else None
        filename = body.get("filename") if isinstance(body, dict) else None
        if not data or not filename or not isinstance(data, str) or not isinstance(filename, str):
            return web.json_response({"error": "Missing data or filename"}, status=400)

        match = _DATA_URL_RE.match(data)
        encoded = match.group(2) if match else data
        try:
            content = base64.b64decode(encoded)
        except (binascii.Error, ValueError):
            return web.json_response({"error": "Invalid base64 data"}, status=400)

        ext = Path(filename).suffix.lower()
        if not _SAFE_EXT_RE.match(ext):
            ext = ".png"
        safe_name = f"img-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}{ext}"
        target = self._config.uploads_dir / safe_name
        try:
            atomic_write_bytes(target, content)
        except OSError as exc:
            logger.warning("Upload write failed for %s: %s", target, exc)
            return web.json_response({"error": str(exc)}, status=500)
        logger.info("Stored upload %s (%d bytes)", safe_name, len(content))
        return web.json_response({
            "path": str(target.resolve()),
            "url": f"/uploads/{safe_name}",
            "name": safe_name,
        })

    # ── Preferences ──

    async def _handle_get_cli_params(self, request: web.Request) -> web.Response:
        return web.json_response(self._cli_params.load())

    async def _handle_put_cli_params(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        try:
            self._cli_params.save(body)
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        except OSError as exc:
            return web.json_response({"error": str(exc)}, status=500)
        return web.json_response({"ok": True})

    def _instruction_candidates(self) -> list[Path]:
        """Where the agent instruction file may live, in lookup order."""
        candidates = [
            self._config.data_dir / INSTRUCTIONS_FILE,
            Path(self._config.agent_cwd) / INSTRUCTIONS_FILE,
            Path.home() / ".claude" / INSTRUCTIONS_FILE,
        ]
        unique: list[Path] = []
        for path in candidates:
            resolved = path.resolve()
            if resolved not in unique:
                unique.append(resolved)
        return unique

    async def _handle_get_instructions(self, request: web.Request) -> web.Response:
        candidates = self._instruction_candidates()
        for path in candidates:
            if path.is_file():
                try:
                    content = path.read_text(encoding="utf-8")
                except OSError as exc:
                    logger.warning("Failed to read %s: %s", path, exc)
                    continue
                return web.json_response({"path": str(path), "content": content})
        return web.json_response({"path": str(candidates[0]), "content": ""})

    async def _handle_put_instructions(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Body must be an object"}, status=400)
        allowed = self._instruction_candidates()
        raw_path = body.get("path")
        target = Path(raw_path).resolve() if raw_path else allowed[0]
        if target not in allowed:
            logger.warning("Refusing to write instructions to %s", target)
            return web.json_response({"error": "Writing to this path is not allowed"}, status=403)
        content = body.get("content")
        if not isinstance(content, str):
            return web.json_response({"error": "content must be a string"}, status=400)
        try:
            atomic_write_text(target, content)
        except OSError as exc:
            return web.json_response({"error": str(exc)}, status=500)
        logger.info("Wrote %s (%d chars)", target, len(content))
        return web.json_response({"ok": True, "path": str(target)})

    async def _handle_summarize(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON"}, status=400)
        text = body.get("text") if isinstance(body, dict) else None
        if not text or not isinstance(text, str):
            return web.json_response({"error": "Missing text"}, status=400)
        title = await summarize_title(
            text,
            command=self._config.summary_command,
            model=self._config.summary_model,
            timeout=self._config.summary_timeout_seconds,
        )
        return web.json_response({"title": title})

    async def _handle_index(self, request: web.Request) -> web.StreamResponse:
        index = self._config.static_dir / "index.html"
        if not index.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index)
