"""
Dispatcher - inbound message → conversation update → outbound reply.

Each inbound message walks the same pipeline:

  1. filter     - drop the bot's own messages (identity, never content)
  2. parent     - take the reply-to event id, if any
  3. resolve    - append to the owning conversation or start a new one
  4. complete   - ask the completion client for a reply
  5. send       - post the reply as a Matrix reply to the inbound event
  6. record     - append the assistant turn once the send succeeded

Every failure is local to one event: it is logged and the event is dropped.
Nothing is retried.  A failed completion rolls back the user turn so the
conversation is exactly as it was before the event arrived.

mautrix runs event handlers as concurrent tasks, so ``handle_message`` is
serialised by a single lock: one event is handled to completion before the
next one touches the store.
"""

import asyncio
import logging
from typing import Optional, Protocol

from parley.core.completion import CompletionClient
from parley.core.thread_store import ThreadStore
from parley.core.types import (
    ROLE_ASSISTANT,
    ROLE_USER,
    CompletionError,
    InboundMessage,
    InviteEvent,
    Turn,
)

logger = logging.getLogger(__name__)


class ChatTransport(Protocol):
    """The chat-protocol side the dispatcher talks to."""

    async def send_reply(self, room_id: str, text: str, reply_to: Optional[str]) -> str:
        """Send *text* (Markdown) to *room_id*; return the new event id."""
        ...

    async def join_room(self, room_id: str) -> None:
        ...


class Dispatcher:

    def __init__(self, *, bot_user_id: str, store: ThreadStore,
                 completion: CompletionClient, transport: ChatTransport) -> None:
        self._bot_user_id = bot_user_id
        self._store = store
        self._completion = completion
        self._transport = transport
        self._lock = asyncio.Lock()

    @property
    def store(self) -> ThreadStore:
        return self._store

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def handle_message(self, msg: InboundMessage) -> Optional[Turn]:
        """Run the reply pipeline for *msg*.

        Returns the recorded assistant turn, or ``None`` when the message was
        filtered or its handling failed.
        """
        logger.info("Received message %s from %s in %s: %s",
                    msg.event_id, msg.sender, msg.room_id, msg.body[:100])

        if msg.sender == self._bot_user_id:
            return None
        if not msg.body.strip():
            return None

        async with self._lock:
            if msg.event_id in self._store:
                logger.debug("Ignoring redelivered event %s", msg.event_id)
                return None
            return await self._reply(msg)

    async def _reply(self, msg: InboundMessage) -> Optional[Turn]:
        parent_id = msg.reply_to or None
        user_turn = Turn(
            id=msg.event_id,
            role=ROLE_USER,
            content=msg.body,
            parent_id=parent_id,
        )

        conv = self._store.find_by_turn_id(parent_id) if parent_id else None
        if conv is not None:
            self._store.append(conv, user_turn)
        else:
            if parent_id:
                logger.debug("Parent %s unknown - starting new conversation", parent_id)
            conv = self._store.create(user_turn)

        try:
            reply = await self._completion.complete(conv)
        except CompletionError as exc:
            logger.error("Completion failed for %s in %s: %s",
                         msg.event_id, msg.room_id, exc)
            self._store.discard(conv, user_turn)
            return None
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected completion error for %s in %s",
                             msg.event_id, msg.room_id)
            self._store.discard(conv, user_turn)
            return None

        try:
            sent_id = await self._transport.send_reply(msg.room_id, reply, msg.event_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send reply to %s in %s: %s",
                         msg.event_id, msg.room_id, exc)
            return None

        assistant_turn = Turn(
            id=str(sent_id),
            role=ROLE_ASSISTANT,
            content=reply,
            parent_id=msg.event_id,
        )
        self._store.append(conv, assistant_turn)
        logger.info("Sent reply %s in %s (%d turn(s) in thread): %s",
                    sent_id, msg.room_id, len(conv.turns), reply[:100])
        return assistant_turn

    # ------------------------------------------------------------------
    # Invites
    # ------------------------------------------------------------------

    async def handle_invite(self, invite: InviteEvent) -> bool:
        """Accept every invite addressed to the bot.  Returns True if joined."""
        if invite.invitee != self._bot_user_id:
            return False
        try:
            await self._transport.join_room(invite.room_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to join room %s after invite from %s: %s",
                         invite.room_id, invite.inviter, exc)
            return False
        logger.info("Joined room %s after invite from %s",
                    invite.room_id, invite.inviter)
        return True
