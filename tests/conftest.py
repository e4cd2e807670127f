# tests/conftest.py
import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from app import create_app, get_completion
from chatstore import ChatStore, Settings, TurnLogger
from chatstore.messages import add_message
from chatstore.models import Chat, new_main_branch


@pytest.fixture
def store(tmp_path: Path) -> ChatStore:
    """Create a chat store rooted in a temp directory."""
    s = ChatStore(tmp_path / "chats")
    s.initialize()
    return s


@pytest.fixture
def turn_logger(store: ChatStore) -> TurnLogger:
    return TurnLogger(store)


@pytest.fixture
def chat() -> Chat:
    """An in-memory chat with only the main branch."""
    return Chat(id="chat-1", template_id="tpl1", branches=[new_main_branch()])


@pytest.fixture
def linear_chat(chat: Chat):
    """In-memory chat with user -> assistant on main; returns (chat, msg1, msg2)."""
    msg1 = add_message(chat, "user", "Hello there")
    msg2 = add_message(chat, "assistant", "Hi! How can I help?")
    return chat, msg1, msg2


@pytest.fixture
def write_legacy_chat():
    """Write a v1 (linear array) chat document as a flat <id>.json file."""

    def _write(directory: Path, chat_id: str = "legacy-1", messages=None) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        doc = {
            "id": chat_id,
            "templateId": "tpl-old",
            "title": "Old chat",
            "createdAt": "2024-01-01T10:00:00.000Z",
            "updatedAt": "2024-01-02T10:00:00.000Z",
            "providerOverride": None,
            "messages": messages if messages is not None else [
                {"role": "user", "content": "first question", "timestamp": "2024-01-01T10:00:01.000Z"},
                {
                    "role": "assistant",
                    "content": "first answer",
                    "timestamp": "2024-01-01T10:00:02.000Z",
                    "provider": "openai",
                    "model": "gpt-4o-mini",
                    "duration": 1200,
                },
                {"role": "user", "content": "second question", "timestamp": "2024-01-01T10:00:03.000Z"},
            ],
        }
        path = directory / f"{chat_id}.json"
        path.write_text(json.dumps(doc), encoding="utf-8")
        return path

    return _write


class FakeCompletion:
    """Stands in for the OpenAI call; records every context it receives."""

    def __init__(self, reply: str = "fake reply"):
        self.reply = reply
        self.calls = []

    def __call__(self, messages):
        self.calls.append(messages)
        return self.reply


@pytest.fixture
def fake_completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_dir=tmp_path / "data", _env_file=None)


@pytest.fixture
def client(settings: Settings, fake_completion: FakeCompletion):
    """Test client with the AI call replaced."""
    app = create_app(settings)
    app.dependency_overrides[get_completion] = lambda: fake_completion
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
