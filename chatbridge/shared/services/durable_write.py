"""Crash-safe file replacement for transcripts, settings and uploads."""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _fsync_dir(dir_path: Path) -> None:
    try:
        flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
        fd = os.open(str(dir_path), flags)
    except OSError:
        # Windows and some filesystems refuse to open directories.
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _replace_with_bytes(path: Path, payload: bytes) -> None:
    """Stage payload in a sibling temp file, fsync, rename, fsync the dir.

    Readers see either the previous file or the complete new one.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, staged = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, target)
    except BaseException:
        try:
            os.unlink(staged)
        except OSError:
            pass
        raise
    _fsync_dir(target.parent)


def atomic_write_bytes(path: Path, content: bytes) -> None:
    _replace_with_bytes(path, content)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    _replace_with_bytes(path, content.encode(encoding))


def atomic_write_json(path: Path, data: Any) -> None:
    """Pretty-printed JSON (2-space indent, UTF-8 kept readable)."""
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))
