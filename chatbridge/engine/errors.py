"""Exception hierarchy for the bridge.

Each user-facing failure mode has its own exception so the web layer
can turn it into an ``error`` event or an HTTP status without string
matching.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class UnknownModelError(BridgeError):
    """The requested model id is not listed by any configured provider."""
    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"Unknown model: {model_id}")


class InvalidExtraArgsError(BridgeError):
    """User-supplied extra CLI arguments are not a list of non-empty strings."""
    def __init__(self, value: object):
        self.value = value
        super().__init__(
            f"Invalid extra arguments: expected a list of non-empty strings, "
            f"got {value!r}"
        )


class ProcessSpawnError(BridgeError):
    """The agent subprocess could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to run {command}: {reason}")


class InvalidConversationIdError(BridgeError):
    """Conversation ids are used as file names and must stay inside the store."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Invalid conversation id: {conversation_id!r}")
