"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CHATBRIDGE_* env vars
or the command-line flags in ``chatbridge.app``.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Tool-result output above this many characters is truncated before it
# reaches the client.
TOOL_OUTPUT_LIMIT = 51200
# Max characters forwarded per stderr chunk.
STDERR_CHUNK_LIMIT = 500


@dataclass
class BridgeConfig:
    """Server and agent-process configuration."""

    host: str = "127.0.0.1"
    port: int = 3000
    # Root for conversations/, uploads/, logs/ and cli-params.json.
    data_dir: Path = field(default_factory=Path.cwd)
    # models.yaml (or models.json); resolved under data_dir when unset.
    models_path: Path | None = None
    # Working directory handed to agent subprocesses.
    agent_cwd: Path | None = None
    static_dir: Path | None = None

    # Short agent call used to title conversations.
    summary_command: str = "claude"
    summary_model: str = "claude-haiku-4-5-20251001"
    summary_timeout_seconds: float = 30.0

    # --permission-mode handed to stream-json agents.
    permission_mode: str = "bypassPermissions"

    # Seconds between SIGTERM and SIGKILL when tearing down a process tree.
    kill_grace_seconds: float = 3.0

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.models_path is None:
            yaml_path = self.data_dir / "models.yaml"
            json_path = self.data_dir / "models.json"
            self.models_path = json_path if json_path.exists() and not yaml_path.exists() else yaml_path
        else:
            self.models_path = Path(self.models_path)
        self.agent_cwd = Path(self.agent_cwd) if self.agent_cwd else self.data_dir
        self.static_dir = Path(self.static_dir) if self.static_dir else self.data_dir / "public"

    @property
    def conversations_dir(self) -> Path:
        return self.data_dir / "conversations"

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def cli_params_path(self) -> Path:
        return self.data_dir / "cli-params.json"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        """Load configuration from CHATBRIDGE_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("CHATBRIDGE_")
        }
        if overrides:
            logger.info(
                "BridgeConfig.from_env: CHATBRIDGE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("BridgeConfig.from_env: no CHATBRIDGE_* env vars set, using defaults")

        data_dir = os.getenv("CHATBRIDGE_DATA_DIR")
        config = cls(
            host=os.getenv("CHATBRIDGE_HOST", cls.host),
            port=int(os.getenv("CHATBRIDGE_PORT", str(cls.port))),
            data_dir=Path(data_dir) if data_dir else Path.cwd(),
            models_path=os.getenv("CHATBRIDGE_MODELS") or None,
            agent_cwd=os.getenv("CHATBRIDGE_AGENT_CWD") or None,
            static_dir=os.getenv("CHATBRIDGE_STATIC_DIR") or None,
            summary_command=os.getenv(
                "CHATBRIDGE_SUMMARY_COMMAND", cls.summary_command
            ),
            summary_model=os.getenv(
                "CHATBRIDGE_SUMMARY_MODEL", cls.summary_model
            ),
            summary_timeout_seconds=float(os.getenv(
                "CHATBRIDGE_SUMMARY_TIMEOUT", str(cls.summary_timeout_seconds)
            )),
            permission_mode=os.getenv(
                "CHATBRIDGE_PERMISSION_MODE", cls.permission_mode
            ),
            kill_grace_seconds=float(os.getenv(
                "CHATBRIDGE_KILL_GRACE", str(cls.kill_grace_seconds)
            )),
            log_level=os.getenv("CHATBRIDGE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "BridgeConfig.from_env: data_dir=%s models=%s agent_cwd=%s log_level=%s",
            config.data_dir, config.models_path, config.agent_cwd,
            config.log_level,
        )
        return config
