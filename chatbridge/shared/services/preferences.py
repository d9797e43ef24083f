"""CLI parameter preferences stored in ``{data_dir}/cli-params.json``.

The browser keeps per-provider extra arguments here (for example
``{"claude": ["--add-dir", "/src"]}``) and sends them back as
``extraArgs`` with each chat message.  The document is opaque to the
server apart from having to be a JSON object.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from chatbridge.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)


class CliParams:
    """Load/save the CLI parameter document."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Return the stored document, or {} if missing/corrupt."""
        try:
            if not self._path.exists():
                logger.debug("CLI params file not found at %s; using defaults", self._path)
                return {}
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load CLI params from %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("CLI params in %s is not an object; ignoring", self._path)
            return {}
        return data

    def save(self, data: dict[str, Any]) -> None:
        if not isinstance(data, dict):
            raise ValueError("CLI params must be a JSON object")
        atomic_write_json(self._path, data)
        logger.info("Saved CLI params for %d provider(s) to %s", len(data), self._path)
