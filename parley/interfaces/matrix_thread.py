"""
Matrix Interface Thread

Connects Parley to a Matrix homeserver through mautrix-python.  Room messages
and invites are translated into core events for the
:class:`~parley.core.dispatcher.Dispatcher`; in the other direction this
class is the dispatcher's chat transport, posting Markdown replies as
``m.in_reply_to`` messages.

Encrypted rooms work through mautrix's OlmMachine, whose state lives in the
SQLite file at ``matrix.crypto_db_path``.  Messages from the initial sync are
ignored so the bot never answers what was said while it was offline.
"""

import asyncio
import html as _html
import logging
import os as _os
import re as _re
import tempfile as _tempfile
from collections.abc import MutableMapping as _Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiohttp
from ruamel.yaml import YAML as _YAML
from ruamel.yaml.scalarstring import DoubleQuotedScalarString as _DQStr

from mautrix.client import Client, InternalEventType
from mautrix.client.dispatcher import MembershipEventDispatcher
from mautrix.client.state_store.memory import MemoryStateStore
from mautrix.crypto import OlmMachine
from mautrix.crypto.store import PgCryptoStore
from mautrix.errors import MUnknownToken
from mautrix.types import (
    EventID,
    EventType,
    Format,
    MessageType,
    RelationType,
    RoomID,
    TextMessageEventContent,
    UserID,
)
from mautrix.util.async_db import Database

from parley.core.types import InboundMessage, InviteEvent
from parley.infra.paths import CONFIG_PATH, CRYPTO_DB_PATH

logger = logging.getLogger(__name__)

DEFAULT_PICKLE_KEY = "parley"
DEVICE_DISPLAY_NAME = "Parley"


# ---------------------------------------------------------------------------
# Credentials and local crypto state
# ---------------------------------------------------------------------------

def persist_credentials(access_token: str, device_id: str,
                        config_path: Path = CONFIG_PATH) -> bool:
    """Store a fresh login in the ``matrix`` section of config.yaml.

    The file is edited with ruamel.yaml so the user's comments survive, and
    replaced atomically.  Returns False when there is nothing to update.
    """
    if not config_path.exists():
        return False

    yaml = _YAML()
    yaml.preserve_quotes = True
    try:
        document = yaml.load(config_path.read_text(encoding="utf-8"))
    except Exception:  # noqa: BLE001
        logger.warning("Cannot parse %s; login not saved", config_path, exc_info=True)
        return False

    matrix = document.get("matrix") if isinstance(document, _Mapping) else None
    if not isinstance(matrix, _Mapping):
        logger.warning("No matrix section in %s; login not saved", config_path)
        return False
    # Quoted so yaml.safe_load never reads a token back as bool/None.
    matrix["access_token"] = _DQStr(access_token)
    matrix["device_id"] = _DQStr(device_id)

    tmp = _tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", newline="\n", dir=config_path.parent,
        prefix=".config_", suffix=".tmp", delete=False,
    )
    try:
        with tmp:
            yaml.dump(document, tmp)
        _os.replace(tmp.name, config_path)
    except BaseException:
        Path(tmp.name).unlink(missing_ok=True)
        raise
    return True


def _remove_crypto_store(db_path: Path) -> None:
    for path in (db_path, db_path.with_name(db_path.name + "-wal"),
                 db_path.with_name(db_path.name + "-shm")):
        if path.exists():
            path.unlink()
            logger.info("Removed crypto state %s", path)


class _SharedRoomStateStore(MemoryStateStore):
    """In-memory room state that can answer OlmMachine's shared-room query."""

    async def find_shared_rooms(self, user_id: UserID) -> list[RoomID]:
        return [room for room, members in self.members.items() if user_id in members]


# ---------------------------------------------------------------------------
# Config and thread
# ---------------------------------------------------------------------------

@dataclass
class MatrixConfig:
    homeserver: str
    user_id: str
    access_token: str = ""
    device_id: str = ""
    password: str = ""
    crypto_db_path: Path = CRYPTO_DB_PATH
    pickle_key: str = DEFAULT_PICKLE_KEY


class MatrixThread:
    """
    Runs as an asyncio task.  After construction, inject the dispatcher and
    call ``run()``.  ``send_reply`` / ``join_room`` may be called from any
    task in the same event loop.
    """

    def __init__(self, config: MatrixConfig, dispatcher=None) -> None:
        self._cfg = config
        self._dispatcher = dispatcher
        self._client: Optional[Client] = None
        self._crypto_db: Optional[Database] = None
        self._running = False
        self._send_lock = asyncio.Lock()

    @property
    def user_id(self) -> str:
        return self._cfg.user_id

    def inject_dispatcher(self, dispatcher) -> None:
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Chat transport
    # ------------------------------------------------------------------

    async def send_reply(self, room_id: str, text: str, reply_to: Optional[str]) -> str:
        """Send *text* as an HTML-formatted message, replying to *reply_to*.

        Returns the new event id.  Errors propagate to the caller.
        """
        if self._client is None:
            raise RuntimeError("Matrix client is not connected")

        content = build_reply_content(text, reply_to)
        async with self._send_lock:
            try:
                event_id = await self._client.send_message_event(
                    RoomID(room_id), EventType.ROOM_MESSAGE, content,
                )
            except MUnknownToken:
                logger.error("Reply to %s rejected: token expired, stopping sync", room_id)
                self._client.stop()
                raise
        return str(event_id)

    async def join_room(self, room_id: str) -> None:
        if self._client is None:
            raise RuntimeError("Matrix client is not connected")
        await self._client.join_room_by_id(RoomID(room_id))

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        self._running = True

        if not self._cfg.access_token:
            if not self._cfg.password:
                logger.error("Matrix: configure matrix.access_token or matrix.password")
                return
            await self._login()

        try:
            await self._serve()
        except asyncio.CancelledError:
            logger.info("Matrix task cancelled")
        except MUnknownToken:
            if not (self._cfg.password and self._running):
                logger.error("Access token for %s was rejected and no password is "
                             "configured for re-login", self._cfg.user_id)
                return
            # A new login means a new device; its crypto state starts fresh.
            logger.info("Access token rejected; logging in again as %s", self._cfg.user_id)
            await self._disconnect()
            _remove_crypto_store(Path(self._cfg.crypto_db_path))
            try:
                await self._login()
                await self._serve()
            except Exception as exc:  # noqa: BLE001
                logger.error("Re-login failed: %s", exc, exc_info=True)
        except Exception as exc:  # noqa: BLE001
            logger.error("Matrix fatal error: %s", exc, exc_info=True)
        finally:
            await self._disconnect()

    def stop(self) -> None:
        self._running = False
        if self._client is not None:
            self._client.stop()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _serve(self) -> None:
        """Connect, enable encryption and sync until ``stop()``."""
        self._client = self._build_client()
        await self._enable_encryption(self._client)
        logger.info("Listening as %s", self._cfg.user_id)
        self._client.ignore_initial_sync = True
        await self._client.start(filter_data=None)

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            client.stop()
            try:
                await client.api.session.close()
            except Exception:  # noqa: BLE001
                logger.debug("HTTP session close failed", exc_info=True)
        db, self._crypto_db = self._crypto_db, None
        if db is not None:
            await db.stop()

    async def _login(self) -> None:
        """Password login; the new token and device are kept and persisted."""
        url = f"{self._cfg.homeserver.rstrip('/')}/_matrix/client/v3/login"
        request = {
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": self._cfg.user_id},
            "password": self._cfg.password,
            "initial_device_display_name": DEVICE_DISPLAY_NAME,
        }
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=request) as resp:
                body = await resp.json()

        if "access_token" not in body:
            raise RuntimeError(
                f"Matrix login for {self._cfg.user_id} failed: "
                f"{body.get('errcode', 'M_UNKNOWN')} {body.get('error', '')}".rstrip()
            )
        self._cfg.access_token = body["access_token"]
        self._cfg.device_id = body["device_id"]
        saved = persist_credentials(self._cfg.access_token, self._cfg.device_id)
        logger.info("Logged in as %s, device %s%s", self._cfg.user_id, self._cfg.device_id,
                    " (saved to config.yaml)" if saved else "")

    def _build_client(self) -> Client:
        if not self._cfg.device_id:
            raise ValueError("matrix.device_id is required with an access_token; "
                             "configure matrix.password to log in automatically")
        client = Client(
            mxid=UserID(self._cfg.user_id),
            device_id=self._cfg.device_id,
            base_url=self._cfg.homeserver,
            token=self._cfg.access_token,
            state_store=_SharedRoomStateStore(),
        )
        # Turns m.room.member events into InternalEventType.INVITE.
        client.add_dispatcher(MembershipEventDispatcher)
        client.add_event_handler(EventType.ROOM_MESSAGE, self._on_message)
        client.add_event_handler(InternalEventType.INVITE, self._on_invite)
        return client

    async def _enable_encryption(self, client: Client) -> None:
        db_path = Path(self._cfg.crypto_db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._crypto_db = Database.create(
            f"sqlite:///{db_path.resolve()}",
            upgrade_table=PgCryptoStore.upgrade_table,
        )
        await self._crypto_db.start()

        store = PgCryptoStore(
            account_id=self._cfg.user_id,
            pickle_key=self._cfg.pickle_key,
            db=self._crypto_db,
        )
        machine = OlmMachine(client=client, crypto_store=store, state_store=client.state_store)
        await machine.load()
        client.crypto = machine
        client.sync_store = store
        await machine.share_keys()
        logger.info("Encryption ready for device %s (%s)", self._cfg.device_id, db_path)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_message(self, evt) -> None:
        if self._dispatcher is None:
            logger.warning("Message %s received before dispatcher was injected", evt.event_id)
            return
        msg = inbound_from_event(evt)
        if msg is None:
            return
        await self._dispatcher.handle_message(msg)

    async def _on_invite(self, evt) -> None:
        if self._dispatcher is None:
            return
        await self._dispatcher.handle_invite(InviteEvent(
            room_id=str(evt.room_id),
            inviter=str(evt.sender),
            invitee=str(evt.state_key),
        ))


# ---------------------------------------------------------------------------
# Event translation
# ---------------------------------------------------------------------------

def inbound_from_event(evt) -> Optional[InboundMessage]:
    """Translate a mautrix text message event into an :class:`InboundMessage`.

    Non-text messages and edits (``m.replace``) are skipped.  For replies the
    quoted fallback that clients prepend to the body is stripped.
    """
    content = evt.content
    if getattr(content, "msgtype", None) != MessageType.TEXT:
        return None
    relation = getattr(content, "relates_to", None)
    if relation is not None and relation.rel_type == RelationType.REPLACE:
        return None

    reply_to = content.get_reply_to()
    if reply_to:
        content.trim_reply_fallback()

    return InboundMessage(
        room_id=str(evt.room_id),
        event_id=str(evt.event_id),
        sender=str(evt.sender),
        body=(content.body or "").strip(),
        reply_to=str(reply_to) if reply_to else None,
    )


def build_reply_content(text: str, reply_to: Optional[str]) -> TextMessageEventContent:
    content = TextMessageEventContent(
        msgtype=MessageType.TEXT,
        body=text,
        format=Format.HTML,
        formatted_body=markdown_to_html(text),
    )
    if reply_to:
        content.set_reply(EventID(reply_to))
    return content


# ---------------------------------------------------------------------------
# Markdown -> Matrix HTML
# ---------------------------------------------------------------------------

_FENCE_RE = _re.compile(r"```\w*\n(.*?)```", _re.DOTALL)

# Applied in order to escaped prose outside fenced blocks.
_INLINE_RULES = (
    (_re.compile(r"`([^`]+)`"), r"<code>\1</code>"),
    (_re.compile(r"\*\*(.+?)\*\*"), r"<strong>\1</strong>"),
    (_re.compile(r"\*(.+?)\*"), r"<em>\1</em>"),
)


def _render_prose(text: str) -> str:
    text = _html.escape(text, quote=False)
    for pattern, replacement in _INLINE_RULES:
        text = pattern.sub(replacement, text)
    return text.replace("\n", "<br>")


def markdown_to_html(text: str) -> str:
    """Render the Markdown subset LLM replies use: fences, code, bold, italic.

    Fenced blocks keep their line breaks inside ``<pre>``; everything else
    is escaped first, so model output cannot inject markup.
    """
    parts: list[str] = []
    pos = 0
    for fence in _FENCE_RE.finditer(text):
        parts.append(_render_prose(text[pos:fence.start()]))
        parts.append(f"<pre><code>{_html.escape(fence.group(1), quote=False)}</code></pre>")
        pos = fence.end()
    parts.append(_render_prose(text[pos:]))
    return "".join(parts)
