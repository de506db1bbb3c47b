"""Tests for agent.session_persister -- JSON history store."""

import json
import os
import stat
from datetime import datetime

import pytest

from agent.messages import Message
from agent.session_persister import JsonHistoryStore, SessionHistory
from cge_errors import SandboxViolationError
from llm.base import FunctionCall


@pytest.fixture
def store(tmp_path):
    return JsonHistoryStore(tmp_path / "sessions")


def _history(session_id="abc123"):
    call = FunctionCall("read_file", '{"target_file": "main.py"}', id="call_1")
    return SessionHistory(
        session_id=session_id,
        model="llama3",
        command="ask",
        system_prompt="sys",
        messages=[
            Message.system("sys"),
            Message.user("what does main.py do?"),
            Message.assistant(tool_call=call),
            Message.tool("print('hi')", "call_1", "read_file"),
            Message.assistant("It prints hi."),
        ],
        start_time=datetime(2025, 6, 1, 12, 0, 0),
        end_time=datetime(2025, 6, 1, 12, 0, 5),
        metadata={"iterations": 2},
    )


def test_round_trip_preserves_messages(store):
    original = _history()
    store.save(original)
    loaded = store.load("abc123")

    assert loaded.messages == original.messages
    assert loaded.messages[2].tool_call.id == "call_1"
    assert loaded.start_time == original.start_time
    assert loaded.end_time == original.end_time
    assert loaded.metadata == {"iterations": 2}


def test_file_layout_and_mode(store):
    store.save(_history())
    path = store.directory / "session_abc123.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["session_start"] == "2025-06-01T12:00:00"
    assert data["last_updated"] == "2025-06-01T12:00:05"
    assert data["message_count"] == 5
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_list_sessions_newest_first(store):
    store.save(_history("older"))
    store.save(_history("newer"))
    older = store.directory / "session_older.json"
    os.utime(older, (1_000_000, 1_000_000))
    assert store.list_sessions() == ["newer", "older"]


@pytest.mark.parametrize("bad_id", ["../escape", "a/b", "", "x y"])
def test_invalid_session_ids_rejected(store, bad_id):
    with pytest.raises(SandboxViolationError):
        store.load(bad_id)


def test_unknown_and_corrupt_sessions(store):
    with pytest.raises(FileNotFoundError):
        store.load("missing")
    (store.directory / "session_bad.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        store.load("bad")


def test_delete(store):
    store.save(_history())
    store.delete("abc123")
    assert store.list_sessions() == []
