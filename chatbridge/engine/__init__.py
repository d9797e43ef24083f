"""chatbridge engine: agent process supervision, output decoding, sessions."""
from .config import BridgeConfig
from .errors import (
    BridgeError,
    InvalidConversationIdError,
    InvalidExtraArgsError,
    ProcessSpawnError,
    UnknownModelError,
)
from .model_registry import ModelRegistry, ResolvedModel
from .prompt_builder import build_prompt

__all__ = [
    # Session controller (import from .session_controller; pulls in the store)
    "SessionController",
    "BridgeConfig",
    "ModelRegistry",
    "ResolvedModel",
    "build_prompt",
    "BridgeError",
    "InvalidConversationIdError",
    "InvalidExtraArgsError",
    "ProcessSpawnError",
    "UnknownModelError",
]


def __getattr__(name: str):
    if name == "SessionController":
        from .session_controller import SessionController
        return SessionController
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
