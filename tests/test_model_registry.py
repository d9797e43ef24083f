from __future__ import annotations

import json
from pathlib import Path

from chatbridge.engine.model_registry import (
    FORMAT_CODEX_JSON,
    FORMAT_RAW,
    FORMAT_STREAM_JSON,
    ModelRegistry,
)


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_missing_file_resolves_nothing(tmp_path: Path) -> None:
    registry = ModelRegistry(tmp_path / "models.yaml")
    assert registry.load() == {}
    assert registry.resolve("anything") is None


def test_corrupt_file_resolves_nothing(tmp_path: Path) -> None:
    registry = ModelRegistry(_write(tmp_path / "models.yaml", "claude: [unclosed"))
    assert registry.load() == {}
    assert registry.resolve("claude-opus") is None


def test_yaml_registry_resolves_first_matching_provider(tmp_path: Path) -> None:
    registry = ModelRegistry(_write(tmp_path / "models.yaml", (
        "claude:\n"
        "  label: Claude\n"
        "  cmd: claude\n"
        "  format: stream-json\n"
        "  models: [opus, shared]\n"
        "codex:\n"
        "  cmd: codex\n"
        "  args: [exec, --json, -m, '{model}', '-']\n"
        "  format: codex-json\n"
        "  models: [gpt-5, shared]\n"
    )))

    opus = registry.resolve("opus")
    assert opus is not None
    assert opus.provider == "claude"
    assert opus.format == FORMAT_STREAM_JSON
    assert opus.is_interactive

    shared = registry.resolve("shared")
    assert shared is not None and shared.provider == "claude"

    gpt = registry.resolve("gpt-5")
    assert gpt is not None
    assert gpt.format == FORMAT_CODEX_JSON
    assert not gpt.is_interactive
    assert gpt.args_template == ("exec", "--json", "-m", "{model}", "-")


def test_json_registry_is_accepted(tmp_path: Path) -> None:
    doc = {"gemini": {"label": "Gemini", "cmd": "gemini", "args": ["-m", "{model}"], "models": ["g1"]}}
    registry = ModelRegistry(_write(tmp_path / "models.json", json.dumps(doc)))
    resolved = registry.resolve("g1")
    assert resolved is not None
    assert resolved.format == FORMAT_RAW
    assert registry.list_models() == {"Gemini": ["g1"]}


def test_edits_take_effect_without_restart(tmp_path: Path) -> None:
    path = _write(tmp_path / "models.yaml", "a:\n  cmd: a\n  models: [m1]\n")
    registry = ModelRegistry(path)
    assert registry.resolve("m2") is None
    _write(path, "a:\n  cmd: a\n  models: [m1, m2]\n")
    assert registry.resolve("m2") is not None


def test_unknown_format_falls_back_to_raw(tmp_path: Path) -> None:
    registry = ModelRegistry(_write(tmp_path / "models.yaml", (
        "x:\n  cmd: x\n  format: xml-stream\n  models: [m]\n"
    )))
    resolved = registry.resolve("m")
    assert resolved is not None and resolved.format == FORMAT_RAW


def test_provider_without_cmd_is_skipped(tmp_path: Path) -> None:
    registry = ModelRegistry(_write(tmp_path / "models.yaml", (
        "broken:\n  models: [m]\n"
        "working:\n  cmd: ok\n  models: [m]\n"
    )))
    resolved = registry.resolve("m")
    assert resolved is not None and resolved.provider == "working"


def test_render_args_drops_prompt_and_substitutes(tmp_path: Path) -> None:
    registry = ModelRegistry(_write(tmp_path / "models.yaml", (
        "x:\n"
        "  cmd: x\n"
        "  args: ['-m', '{model}', '{prompt}', '--file={prompt_file}']\n"
        "  models: [m1]\n"
    )))
    resolved = registry.resolve("m1")
    assert resolved is not None
    assert resolved.render_args("m1", "/tmp/chat-1/prompt.txt") == [
        "-m", "m1", "--file=/tmp/chat-1/prompt.txt",
    ]


def test_argv_prefix_splits_commands_with_leading_args(tmp_path: Path) -> None:
    registry = ModelRegistry(_write(tmp_path / "models.yaml", (
        "x:\n  cmd: npx some-agent\n  models: [m]\n"
        "y:\n  cmd: plain\n  models: [n]\n"
    )))
    assert registry.resolve("m").argv_prefix() == ["npx", "some-agent"]
    assert registry.resolve("n").argv_prefix() == ["plain"]


def test_string_models_value_does_not_match_substrings(tmp_path: Path) -> None:
    registry = ModelRegistry(_write(tmp_path / "models.yaml", (
        "codex:\n"
        "  cmd: codex\n"
        "  models: gpt-5.2-codex\n"
        "fallback:\n"
        "  cmd: other\n"
        "  models: [codex]\n"
    )))
    resolved = registry.resolve("codex")
    assert resolved is not None and resolved.provider == "fallback"
    assert registry.resolve("gpt-5.2-codex") is None
    assert "codex" not in registry.list_models()
