from __future__ import annotations

from types import SimpleNamespace
from typing import Optional

import pytest

from parley.core.dispatcher import Dispatcher
from parley.core.thread_store import ThreadStore
from parley.core.types import CompletionError, Conversation

BOT_ID = "@parley:example.org"
ROOM_ID = "!room:example.org"


class FakeCompletion:
    """Records the history it was asked about and replies from a script."""

    def __init__(self, replies: Optional[list[str]] = None, should_raise: bool = False) -> None:
        self._replies = list(replies or [])
        self._should_raise = should_raise
        self.histories: list[list[tuple[str, str]]] = []

    async def complete(self, conversation: Conversation) -> str:
        self.histories.append([(t.role, t.content) for t in conversation.turns])
        if self._should_raise:
            raise CompletionError("service unavailable")
        if self._replies:
            return self._replies.pop(0)
        return f"reply {len(self.histories)}"


class FakeTransport:
    """In-memory chat transport handing out sequential event ids."""

    def __init__(self, send_raises: bool = False, join_raises: bool = False) -> None:
        self._send_raises = send_raises
        self._join_raises = join_raises
        self.sent: list[tuple[str, str, Optional[str]]] = []
        self.joined: list[str] = []

    async def send_reply(self, room_id: str, text: str, reply_to: Optional[str]) -> str:
        if self._send_raises:
            raise ConnectionError("homeserver unreachable")
        self.sent.append((room_id, text, reply_to))
        return f"$sent{len(self.sent)}"

    async def join_room(self, room_id: str) -> None:
        if self._join_raises:
            raise PermissionError("forbidden")
        self.joined.append(room_id)


def make_dispatcher(completion=None, transport=None, store=None) -> Dispatcher:
    return Dispatcher(
        bot_user_id=BOT_ID,
        store=store if store is not None else ThreadStore(),
        completion=completion or FakeCompletion(),
        transport=transport or FakeTransport(),
    )


def fake_chat_response(*contents: Optional[str]) -> SimpleNamespace:
    return SimpleNamespace(choices=[
        SimpleNamespace(message=SimpleNamespace(role="assistant", content=c))
        for c in contents
    ])


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
