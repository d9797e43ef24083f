from __future__ import annotations

from pathlib import Path

import pytest

from chatbridge.adapters.events import (
    CancelRequest,
    ChatRequest,
    ToolResponse,
    ToolUse,
    TurnEnd,
    TurnResult,
    event_to_dict,
    parse_intent,
)
from chatbridge.engine.config import BridgeConfig


def test_event_to_dict_omits_none_fields() -> None:
    assert event_to_dict(TurnEnd()) == {"type": "end"}
    assert event_to_dict(TurnResult(cost=0.2, turns=3)) == {"type": "result", "cost": 0.2, "turns": 3}
    assert event_to_dict(ToolUse(tool_use_id="t", name="Bash", input={"c": 1})) == {
        "type": "tool_use", "tool_use_id": "t", "name": "Bash", "input": {"c": 1},
    }


def test_parse_chat_intent_maps_camel_case_keys() -> None:
    intent = parse_intent({
        "type": "chat",
        "conversationId": "c1",
        "message": "hi",
        "model": "m",
        "history": [{"role": "user", "content": "a"}],
        "images": [{"path": "/tmp/a.png"}],
        "extraArgs": ["--x"],
        "systemPrompt": "be brief",
    })
    assert intent == ChatRequest(
        conversation_id="c1",
        message="hi",
        model="m",
        history=[{"role": "user", "content": "a"}],
        images=[{"path": "/tmp/a.png"}],
        extra_args=["--x"],
        system_prompt="be brief",
    )


def test_parse_other_intents() -> None:
    assert parse_intent({"type": "cancel"}) == CancelRequest()
    assert parse_intent({"type": "tool_response", "tool_use_id": "t1", "approved": True}) == ToolResponse(
        tool_use_id="t1", approved=True,
    )
    assert parse_intent({"type": "subscribe"}) is None


def test_config_derives_paths_from_data_dir(tmp_path: Path) -> None:
    config = BridgeConfig(data_dir=tmp_path)
    assert config.models_path == tmp_path / "models.yaml"
    assert config.agent_cwd == tmp_path
    assert config.static_dir == tmp_path / "public"
    assert config.conversations_dir == tmp_path / "conversations"
    assert config.cli_params_path == tmp_path / "cli-params.json"


def test_config_prefers_json_registry_when_only_json_exists(tmp_path: Path) -> None:
    (tmp_path / "models.json").write_text("{}", encoding="utf-8")
    assert BridgeConfig(data_dir=tmp_path).models_path == tmp_path / "models.json"


def test_from_env_applies_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATBRIDGE_PORT", "4010")
    monkeypatch.setenv("CHATBRIDGE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CHATBRIDGE_PERMISSION_MODE", "default")
    monkeypatch.setenv("CHATBRIDGE_KILL_GRACE", "0.5")
    config = BridgeConfig.from_env()
    assert config.port == 4010
    assert config.data_dir == tmp_path
    assert config.permission_mode == "default"
    assert config.kill_grace_seconds == 0.5
    assert config.host == "127.0.0.1"
