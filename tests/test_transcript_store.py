from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from chatbridge.engine.errors import InvalidConversationIdError
from chatbridge.shared.models.conversation import ConversationRecord, Turn
from chatbridge.shared.services import durable_write
from chatbridge.shared.services.preferences import CliParams
from chatbridge.shared.services.transcript_store import TranscriptStore


def test_append_exchange_creates_record_with_title(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    message = "Explain how the generation counter protects against stale output " * 2
    store.append_exchange(
        "c1",
        model="m1",
        user=Turn.user(message, [{"path": "/tmp/a.png"}]),
        assistant=Turn.assistant("  answer \n", [{"type": "tool_use", "id": "t1", "name": "Bash", "input": {}}]),
    )

    data = json.loads((tmp_path / "c1.json").read_text(encoding="utf-8"))
    assert data["id"] == "c1"
    assert data["title"] == message[:60]
    assert data["model"] == "m1"
    assert data["createdAt"] and data["updatedAt"]
    user, assistant = data["messages"]
    assert user["role"] == "user"
    assert user["images"] == [{"path": "/tmp/a.png"}]
    assert assistant["content"] == "answer"
    assert assistant["blocks"][0]["id"] == "t1"


def test_assistant_turn_omits_empty_blocks(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    store.append_exchange("c1", model="m", user=Turn.user("hi"), assistant=Turn.assistant("ok"))
    assistant = store.load_raw("c1")["messages"][1]
    assert "blocks" not in assistant


def test_append_keeps_existing_messages_and_unknown_keys(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    (tmp_path / "c2.json").write_text(json.dumps({
        "id": "c2",
        "title": "Kept",
        "model": "m",
        "createdAt": "2024-01-01T00:00:00.000Z",
        "updatedAt": "2024-01-01T00:00:00.000Z",
        "pinned": True,
        "messages": [{"role": "user", "content": "old", "timestamp": "t", "starred": 1}],
    }), encoding="utf-8")

    store.append_exchange("c2", model="m", user=Turn.user("new"), assistant=Turn.assistant("reply"))

    data = store.load_raw("c2")
    assert data["title"] == "Kept"
    assert data["pinned"] is True
    assert data["createdAt"] == "2024-01-01T00:00:00.000Z"
    assert data["updatedAt"] != "2024-01-01T00:00:00.000Z"
    assert [m["content"] for m in data["messages"]] == ["old", "new", "reply"]
    assert data["messages"][0]["starred"] == 1


def test_list_summaries_newest_first_and_skips_unreadable(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    for cid, updated in (("old", "2024-01-01T00:00:00.000Z"), ("new", "2025-06-01T12:00:00.000Z")):
        store.save(ConversationRecord(id=cid, title=cid, updated_at=updated))
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    summaries = store.list_summaries()
    assert [s["id"] for s in summaries] == ["new", "old"]
    assert set(summaries[0]) == {"id", "title", "updatedAt", "model"}


def test_replace_forces_path_id_and_requires_existing(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    assert store.replace("missing", {"title": "x"}) is False
    store.save(ConversationRecord(id="c3"))
    assert store.replace("c3", {"id": "other", "title": "Renamed", "messages": []}) is True
    data = store.load_raw("c3")
    assert data["id"] == "c3" and data["title"] == "Renamed"


def test_delete(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    store.save(ConversationRecord(id="c4"))
    assert store.delete("c4") is True
    assert store.delete("c4") is False
    assert store.load("c4") is None


@pytest.mark.parametrize("bad", ["../etc/passwd", "a b", "", "a.json", "x/y"])
def test_invalid_ids_are_rejected(tmp_path: Path, bad: str) -> None:
    store = TranscriptStore(tmp_path)
    with pytest.raises(InvalidConversationIdError):
        store.load(bad)


def test_no_temp_files_left_behind(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    store.append_exchange("c5", model=None, user=Turn.user("a"), assistant=Turn.assistant("b"))
    assert sorted(p.name for p in tmp_path.iterdir()) == ["c5.json"]


def test_cli_params_round_trip_and_defaults(tmp_path: Path) -> None:
    params = CliParams(tmp_path / "cli-params.json")
    assert params.load() == {}
    params.save({"claude": ["--add-dir", "/src"]})
    assert params.load() == {"claude": ["--add-dir", "/src"]}
    (tmp_path / "cli-params.json").write_text("[]", encoding="utf-8")
    assert params.load() == {}
    with pytest.raises(ValueError):
        params.save(["not", "a", "dict"])  # type: ignore[arg-type]


def test_unknown_roles_survive_an_append(tmp_path: Path) -> None:
    store = TranscriptStore(tmp_path)
    (tmp_path / "c6.json").write_text(json.dumps({
        "id": "c6",
        "messages": [
            {"role": "system", "content": "be terse", "timestamp": "t"},
            {"role": "tool", "content": "ls", "timestamp": "t", "images": ["/tmp/x.png"]},
        ],
    }), encoding="utf-8")

    store.append_exchange("c6", model="m", user=Turn.user("hi"), assistant=Turn.assistant("hello"))

    messages = store.load_raw("c6")["messages"]
    assert [m["role"] for m in messages] == ["system", "tool", "user", "assistant"]
    assert "images" not in messages[0]
    assert messages[1]["images"] == ["/tmp/x.png"]


def test_binary_writes_sync_the_directory(tmp_path: Path) -> None:
    target = tmp_path / "uploads" / "img.png"
    with patch.object(durable_write, "_fsync_dir") as fsync_dir:
        durable_write.atomic_write_bytes(target, b"\x89PNG")
    assert target.read_bytes() == b"\x89PNG"
    fsync_dir.assert_called_once_with(target.parent)


def test_failed_rename_keeps_old_file_and_no_temp(tmp_path: Path) -> None:
    target = tmp_path / "c7.json"
    target.write_text("old", encoding="utf-8")
    with patch.object(durable_write.os, "replace", side_effect=OSError("disk full")):
        with pytest.raises(OSError):
            durable_write.atomic_write_text(target, "new")
    assert target.read_text(encoding="utf-8") == "old"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["c7.json"]
