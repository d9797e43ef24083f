"""Model registry: maps a model id to the CLI that serves it.

The registry document is re-read on every lookup so edits take effect
without restarting the server.  Both YAML and JSON are accepted (JSON is
parsed by the YAML loader).

Example YAML:
    claude:
      label: Claude
      cmd: claude
      format: stream-json
      models: [claude-opus-4-6, claude-sonnet-4-5-20250929]
    codex:
      label: Codex
      cmd: codex
      args: [exec, --json, -m, "{model}", "-"]
      format: codex-json
      models: [gpt-5.2-codex]
    gemini:
      label: Gemini
      cmd: gemini
      args: [-m, "{model}"]
      models: [gemini-2.5-pro]

Argument templates understand ``{model}`` and ``{prompt_file}``; entries
that are exactly ``{prompt}`` are dropped because the prompt is written to
stdin.
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

FORMAT_RAW = "raw"
FORMAT_STREAM_JSON = "stream-json"
FORMAT_CODEX_JSON = "codex-json"

KNOWN_FORMATS = frozenset({FORMAT_RAW, FORMAT_STREAM_JSON, FORMAT_CODEX_JSON})


@dataclass(frozen=True)
class ResolvedModel:
    """Provider + command line for one model id. Never cached."""
    provider: str
    command: str
    args_template: tuple[str, ...] = field(default_factory=tuple)
    format: str = FORMAT_RAW

    @property
    def is_interactive(self) -> bool:
        """Long-lived stream-json agents keep stdin open across turns."""
        return self.format == FORMAT_STREAM_JSON

    def argv_prefix(self) -> list[str]:
        """Split ``command`` into executable + leading arguments.

        A command naming an existing file is kept whole so Windows paths
        with spaces or backslashes survive.
        """
        if os.path.exists(self.command) or not any(c.isspace() for c in self.command):
            return [self.command]
        return shlex.split(self.command)

    def render_args(self, model_id: str, prompt_file: str | None) -> list[str]:
        """Expand the argument template for a non-interactive invocation."""
        rendered: list[str] = []
        for arg in self.args_template:
            if arg == "{prompt}":
                continue
            arg = arg.replace("{model}", model_id)
            if prompt_file is not None:
                arg = arg.replace("{prompt_file}", prompt_file)
            rendered.append(arg)
        return rendered


class ModelRegistry:
    """Hot-reloading view over the models document."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Return the raw registry document, or {} when missing/corrupt."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Models file not found at %s", self._path)
            return {}
        except OSError as exc:
            logger.warning("Failed to read models file %s: %s", self._path, exc)
            return {}
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            logger.warning("Failed to parse models file %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            if data is not None:
                logger.warning(
                    "Models file %s must contain a mapping, got %s",
                    self._path, type(data).__name__,
                )
            return {}
        return data

    def resolve(self, model_id: str) -> ResolvedModel | None:
        """Find the first provider whose ``models`` list contains model_id."""
        for provider, info in self.load().items():
            if not isinstance(info, dict):
                continue
            models = info.get("models") or []
            if not isinstance(models, (list, tuple)):
                logger.warning(
                    "Provider '%s': models must be a list, got %s; skipping",
                    provider, type(models).__name__,
                )
                continue
            if model_id not in models:
                continue
            command = info.get("cmd")
            if not command:
                logger.warning("Provider '%s' has no cmd configured; skipping", provider)
                continue
            fmt = info.get("format") or FORMAT_RAW
            if fmt not in KNOWN_FORMATS:
                logger.warning(
                    "Provider '%s' declares unknown format '%s'; treating as %s",
                    provider, fmt, FORMAT_RAW,
                )
                fmt = FORMAT_RAW
            return ResolvedModel(
                provider=str(provider),
                command=str(command),
                args_template=tuple(str(a) for a in info.get("args") or ()),
                format=fmt,
            )
        return None

    def list_models(self) -> dict[str, list[str]]:
        """Return provider → model ids, for startup logging."""
        listing: dict[str, list[str]] = {}
        for provider, info in self.load().items():
            if isinstance(info, dict):
                models = info.get("models") or []
                if not isinstance(models, (list, tuple)):
                    continue
                label = str(info.get("label") or provider)
                listing[label] = [str(m) for m in models]
        return listing
