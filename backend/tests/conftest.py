"""Test fixtures for Worldbook Forge."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


class ScriptedModel:
    """Model stand-in that replays canned replies in call order.

    A reply may be a string, an exception instance to raise, or a callable
    receiving the message list.
    """

    def __init__(self, replies: Sequence[Any] = (), default: Any = "{}") -> None:
        self.replies = list(replies)
        self.default = default
        self.calls: list[list[dict[str, str]]] = []

    async def invoke(self, messages):
        self.calls.append([dict(message) for message in messages])
        reply = self.replies.pop(0) if self.replies else self.default
        if callable(reply):
            reply = reply(messages)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    @property
    def prompts(self) -> list[str]:
        return [call[-1]["content"] for call in self.calls]


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("WBF_DB_PATH", str(tmp_path / "wbf.db"))
    monkeypatch.setenv("WBF_RETRY_DELAY_MS", "0")
    monkeypatch.delenv("WBF_CONFIG", raising=False)

    from worldbook_forge.api import dependencies as deps

    deps.reset_dependencies()
    yield
    deps.reset_dependencies()


@pytest.fixture
def make_model() -> Callable[..., ScriptedModel]:
    return ScriptedModel


@pytest.fixture
def settings():
    from worldbook_forge.core.config import Settings

    return Settings(db_path=":memory:", retry_delay_ms=0)


@pytest.fixture
def database():
    from worldbook_forge.db.sqlite import SQLiteDatabase

    db = SQLiteDatabase(":memory:")
    db.ensure_schema()
    yield db
    db.close()
