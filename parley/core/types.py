"""
Shared type definitions for the parley.core package.

Houses the conversation records, the collaborator event records handed to
the dispatcher by the Matrix interface, and the exception types used across
modules.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"


class CompletionError(Exception):
    """The completion service call failed or returned nothing usable."""


class DuplicateTurnError(ValueError):
    """A turn id is already owned by a conversation in the store."""


@dataclass(frozen=True)
class Turn:
    """One message in a conversation thread."""
    id: str                          # Matrix event id
    role: str                        # ROLE_USER | ROLE_ASSISTANT
    content: str
    parent_id: Optional[str] = None  # event id this turn replies to


@dataclass
class Conversation:
    """Append-only sequence of turns sharing a reply lineage.

    Conversations are only ever looked up by the id of a turn they contain;
    ``root_id`` exists for the store's own bookkeeping.
    """
    turns: list[Turn] = field(default_factory=list)
    updated_at: float = field(default_factory=time.monotonic)

    @property
    def root_id(self) -> str:
        return self.turns[0].id


@dataclass(frozen=True)
class InboundMessage:
    room_id: str
    event_id: str
    sender: str
    body: str
    reply_to: Optional[str] = None


@dataclass(frozen=True)
class InviteEvent:
    room_id: str
    inviter: str
    invitee: str  # state_key of the m.room.member event
