"""Conversation record and turn models (on-disk JSON shape)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TITLE_LENGTH = 60


def _utcnow() -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    now = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return now.replace("+00:00", "Z")


class TurnRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Turn:
    # Roles this server does not write are kept as the raw string.
    role: TurnRole | str
    content: str
    timestamp: str = field(default_factory=_utcnow)
    images: list[Any] | None = None
    # tool_use / tool_result blocks, assistant turns only
    blocks: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def user(cls, content: str, images: list[Any] | None = None) -> Turn:
        return cls(role=TurnRole.USER, content=content, images=list(images or []))

    @classmethod
    def assistant(cls, content: str, blocks: list[dict[str, Any]] | None = None) -> Turn:
        return cls(role=TurnRole.ASSISTANT, content=content.strip(), blocks=list(blocks or []))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d["role"] = self.role.value if isinstance(self.role, TurnRole) else self.role
        d["content"] = self.content
        if self.role is TurnRole.USER:
            d["images"] = self.images or []
        elif self.images is not None:
            d["images"] = self.images
        d["timestamp"] = self.timestamp
        if self.blocks:
            d["blocks"] = self.blocks
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Turn:
        known = {"role", "content", "timestamp", "images", "blocks"}
        raw_role = data.get("role")
        try:
            role: TurnRole | str = TurnRole(raw_role)
        except ValueError:
            role = str(raw_role or "")
        return cls(
            role=role,
            content=str(data.get("content") or ""),
            timestamp=str(data.get("timestamp") or ""),
            images=data.get("images"),
            blocks=list(data.get("blocks") or []),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class ConversationRecord:
    """A stored conversation.

    Keys the browser adds that this server does not know about are kept
    in ``extra`` and written back unchanged.
    """

    id: str
    title: str = "Untitled"
    model: str | None = None
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)
    messages: list[Turn] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, conversation_id: str, first_message: str, model: str | None) -> ConversationRecord:
        return cls(
            id=conversation_id,
            title=first_message[:TITLE_LENGTH] or "Untitled",
            model=model,
        )

    def append(self, *turns: Turn) -> None:
        self.messages.extend(turns)
        self.touch()

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title or "Untitled",
            "updatedAt": self.updated_at,
            "model": self.model,
        }

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = dict(self.extra)
        d.update({
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "createdAt": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
            "updatedAt": self.updated_at,
        })
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationRecord:
        known = {"id", "title", "model", "createdAt", "updatedAt", "messages"}
        messages = data.get("messages") or []
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or "Untitled"),
            model=data.get("model"),
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or ""),
            messages=[Turn.from_dict(m) for m in messages if isinstance(m, dict)],
            extra={k: v for k, v in data.items() if k not in known},
        )
