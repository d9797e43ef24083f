"""On-disk conversation transcripts: one JSON file per conversation.

Every write replaces the whole file atomically.  ``append_exchange``
loads, appends and saves without yielding to the event loop, so turns
persisted by this server never interleave; edits arriving through the
HTTP API are last-writer-wins.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chatbridge.engine.errors import InvalidConversationIdError
from chatbridge.shared.models.conversation import ConversationRecord, Turn
from chatbridge.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def validate_conversation_id(conversation_id: str) -> str:
    if not isinstance(conversation_id, str) or not _ID_RE.match(conversation_id):
        raise InvalidConversationIdError(conversation_id)
    return conversation_id


def _sort_key(updated_at: Any) -> datetime:
    if not isinstance(updated_at, str) or not updated_at:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TranscriptStore:
    """CRUD over ``{conversations_dir}/{id}.json``."""

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, conversation_id: str) -> Path:
        return self._dir / f"{validate_conversation_id(conversation_id)}.json"

    def exists(self, conversation_id: str) -> bool:
        return self.path_for(conversation_id).exists()

    def load_raw(self, conversation_id: str) -> dict[str, Any] | None:
        """Return the stored JSON document, or None if there is none."""
        path = self.path_for(conversation_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        if not isinstance(data, dict):
            logger.warning("Conversation file %s is not an object; ignoring", path)
            return None
        return data

    def load(self, conversation_id: str) -> ConversationRecord | None:
        data = self.load_raw(conversation_id)
        if data is None:
            return None
        record = ConversationRecord.from_dict(data)
        record.id = conversation_id
        return record

    def save(self, record: ConversationRecord) -> None:
        atomic_write_json(self.path_for(record.id), record.to_dict())

    def replace(self, conversation_id: str, data: dict[str, Any]) -> bool:
        """Overwrite an existing record with a client-supplied document.

        The id in the path wins over any id in the body.  Returns False
        when no such conversation exists.
        """
        path = self.path_for(conversation_id)
        if not path.exists():
            return False
        document = dict(data)
        document["id"] = conversation_id
        atomic_write_json(path, document)
        return True

    def delete(self, conversation_id: str) -> bool:
        path = self.path_for(conversation_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted conversation %s", conversation_id)
        return True

    def list_summaries(self) -> list[dict[str, Any]]:
        """``[{id, title, updatedAt, model}]`` newest first."""
        summaries: list[dict[str, Any]] = []
        for path in self._dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.debug("Skipping unreadable conversation %s: %s", path.name, exc)
                continue
            if not isinstance(data, dict):
                continue
            summaries.append({
                "id": data.get("id"),
                "title": data.get("title") or "Untitled",
                "updatedAt": data.get("updatedAt"),
                "model": data.get("model"),
            })
        summaries.sort(key=lambda s: _sort_key(s["updatedAt"]), reverse=True)
        return summaries

    def append_exchange(
        self,
        conversation_id: str,
        *,
        model: str | None,
        user: Turn,
        assistant: Turn,
    ) -> ConversationRecord:
        """Append one user/assistant pair, creating the record if needed."""
        record = self.load(conversation_id)
        if record is None:
            record = ConversationRecord.new(conversation_id, user.content, model)
            logger.info("Creating conversation %s (%r)", conversation_id, record.title)
        record.append(user, assistant)
        self.save(record)
        logger.debug(
            "Persisted turn to %s: %d messages, %d blocks",
            conversation_id, len(record.messages), len(assistant.blocks),
        )
        return record
