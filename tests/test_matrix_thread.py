from types import SimpleNamespace

import pytest
import yaml
from mautrix.types import (
    EventID,
    EventType,
    MessageType,
    RelatesTo,
    RelationType,
    TextMessageEventContent,
)

from conftest import BOT_ID, ROOM_ID, FakeCompletion, make_dispatcher
from parley.interfaces.matrix_thread import (
    MatrixConfig,
    MatrixThread,
    build_reply_content,
    inbound_from_event,
    markdown_to_html,
    persist_credentials,
)


class _FakeClient:
    def __init__(self) -> None:
        self.sent: list[tuple] = []
        self.joined: list[str] = []

    async def send_message_event(self, room_id, event_type, content):
        self.sent.append((room_id, event_type, content))
        return EventID(f"$reply{len(self.sent)}")

    async def join_room_by_id(self, room_id):
        self.joined.append(room_id)
        return room_id


def _text_event(event_id: str, body: str, reply_to=None, sender="@alice:example.org"):
    content = TextMessageEventContent(msgtype=MessageType.TEXT, body=body)
    if reply_to:
        content.set_reply(EventID(reply_to))
    return SimpleNamespace(
        room_id=ROOM_ID, event_id=EventID(event_id), sender=sender, content=content,
    )


def _thread_with_client() -> tuple[MatrixThread, _FakeClient]:
    thread = MatrixThread(MatrixConfig(homeserver="https://matrix.example.org", user_id=BOT_ID))
    client = _FakeClient()
    thread._client = client
    return thread, client


def test_markdown_to_html_renders_subset_and_escapes_html() -> None:
    rendered = markdown_to_html("**bold** and *it* with `x<y`\n```py\nprint(1)\n```")

    assert "<strong>bold</strong>" in rendered
    assert "<em>it</em>" in rendered
    assert "<code>x&lt;y</code>" in rendered
    assert rendered.endswith("<pre><code>print(1)\n</code></pre>")


def test_inbound_from_plain_text_event() -> None:
    msg = inbound_from_event(_text_event("$e1", "  Hello  "))

    assert msg.event_id == "$e1"
    assert msg.room_id == ROOM_ID
    assert msg.sender == "@alice:example.org"
    assert msg.body == "Hello"
    assert msg.reply_to is None


def test_inbound_from_reply_strips_quoted_fallback() -> None:
    evt = _text_event(
        "$e3", "> <@parley:example.org> Hello there!\n\nHow are you?", reply_to="$e2",
    )

    msg = inbound_from_event(evt)

    assert msg.reply_to == "$e2"
    assert msg.body == "How are you?"


def test_inbound_skips_non_text_messages() -> None:
    evt = _text_event("$e1", "image.png")
    evt.content.msgtype = MessageType.IMAGE

    assert inbound_from_event(evt) is None


def test_inbound_skips_edits() -> None:
    evt = _text_event("$e2", "* Hello, corrected")
    evt.content.relates_to = RelatesTo(rel_type=RelationType.REPLACE, event_id=EventID("$e1"))

    assert inbound_from_event(evt) is None


@pytest.mark.asyncio
async def test_edited_message_is_not_answered_again() -> None:
    thread, client = _thread_with_client()
    dispatcher = make_dispatcher(transport=thread)
    thread.inject_dispatcher(dispatcher)
    edit = _text_event("$e2", "* Hello, corrected")
    edit.content.relates_to = RelatesTo(rel_type=RelationType.REPLACE, event_id=EventID("$e1"))

    await thread._on_message(_text_event("$e1", "Hello"))
    await thread._on_message(edit)

    assert len(client.sent) == 1
    assert "$e2" not in dispatcher.store


def test_markdown_to_html_escapes_markup_inside_fences() -> None:
    rendered = markdown_to_html("```html\n<b>**x**</b>\n```")

    assert rendered == "<pre><code>&lt;b&gt;**x**&lt;/b&gt;\n</code></pre>"


def test_build_reply_content_sets_html_and_reply_relation() -> None:
    content = build_reply_content("**Hi**", "$e1")

    assert content.body == "**Hi**"
    assert content.formatted_body == "<strong>Hi</strong>"
    assert content.get_reply_to() == "$e1"


def test_build_reply_content_without_parent_has_no_relation() -> None:
    assert build_reply_content("Hi", None).get_reply_to() is None


@pytest.mark.asyncio
async def test_send_reply_returns_new_event_id() -> None:
    thread, client = _thread_with_client()

    event_id = await thread.send_reply(ROOM_ID, "Hello there!", "$e1")

    assert event_id == "$reply1"
    room_id, event_type, content = client.sent[0]
    assert room_id == ROOM_ID
    assert event_type == EventType.ROOM_MESSAGE
    assert content.get_reply_to() == "$e1"


@pytest.mark.asyncio
async def test_send_reply_before_connect_raises() -> None:
    thread = MatrixThread(MatrixConfig(homeserver="https://matrix.example.org", user_id=BOT_ID))

    with pytest.raises(RuntimeError):
        await thread.send_reply(ROOM_ID, "Hello", None)


@pytest.mark.asyncio
async def test_message_event_flows_through_dispatcher_and_back() -> None:
    thread, client = _thread_with_client()
    dispatcher = make_dispatcher(completion=FakeCompletion(["Hello there!"]), transport=thread)
    thread.inject_dispatcher(dispatcher)

    await thread._on_message(_text_event("$e1", "Hello"))
    await thread._on_message(_text_event("$reply1", "Hello there!", sender=BOT_ID))

    assert len(client.sent) == 1
    conv = dispatcher.store.find_by_turn_id("$reply1")
    assert [t.id for t in conv.turns] == ["$e1", "$reply1"]


@pytest.mark.asyncio
async def test_invite_event_joins_room() -> None:
    thread, client = _thread_with_client()
    thread.inject_dispatcher(make_dispatcher(transport=thread))

    await thread._on_invite(SimpleNamespace(
        room_id=ROOM_ID, sender="@alice:example.org", state_key=BOT_ID,
    ))

    assert client.joined == [ROOM_ID]


def test_persist_credentials_writes_credentials_and_keeps_comments(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "# bot settings\n"
        "matrix:\n"
        "  homeserver: https://matrix.example.org  # keep me\n"
        "  access_token: ''\n"
        "openai:\n"
        "  api_key: sk-test\n",
        encoding="utf-8",
    )

    assert persist_credentials("syt_token", "DEVICEID", config_path=path) is True

    text = path.read_text(encoding="utf-8")
    assert "# keep me" in text
    data = yaml.safe_load(text)
    assert data["matrix"]["access_token"] == "syt_token"
    assert data["matrix"]["device_id"] == "DEVICEID"
    assert data["openai"]["api_key"] == "sk-test"


def test_persist_credentials_skips_files_without_matrix_section(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("openai:\n  api_key: sk-test\n", encoding="utf-8")

    assert persist_credentials("syt_token", "DEVICEID", config_path=path) is False
    assert "access_token" not in path.read_text(encoding="utf-8")
