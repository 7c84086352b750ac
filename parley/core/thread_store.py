"""
Thread Store - in-memory registry of active conversations.

Resolves a turn id to the conversation that owns it and starts new
conversations on demand.  A ``turn id -> Conversation`` index is kept up to
date on every create/append so lookups stay O(1) as the store grows.

Retention is unbounded by default.  ``max_conversations`` evicts the least
recently active conversation once the limit is exceeded, and
``max_idle_seconds`` prunes conversations that have not seen a turn for that
long.  Evicted turn ids leave the index, so a later reply to one of them is a
graceful miss and starts a new conversation.
"""

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional

from parley.core.types import Conversation, DuplicateTurnError, Turn

logger = logging.getLogger(__name__)


class ThreadStore:
    """Owns every Conversation; callers only hold transient references."""

    def __init__(self, max_conversations: Optional[int] = None,
                 max_idle_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        if max_conversations is not None and max_conversations < 1:
            raise ValueError("max_conversations must be >= 1")
        self._max_conversations = max_conversations
        self._max_idle_seconds = max_idle_seconds
        self._clock = clock
        # root turn id -> conversation, least recently active first
        self._conversations: "OrderedDict[str, Conversation]" = OrderedDict()
        self._index: dict[str, Conversation] = {}
        # (turn id, previous updated_at, successor root) of the latest append
        self._last_append: Optional[tuple[str, float, Optional[str]]] = None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_by_turn_id(self, turn_id: str) -> Optional[Conversation]:
        if not turn_id:
            return None
        return self._index.get(turn_id)

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self._index

    def __len__(self) -> int:
        return len(self._conversations)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def create(self, first_turn: Turn) -> Conversation:
        """Register a new conversation seeded with *first_turn*."""
        if not first_turn.id:
            raise ValueError("seed turn must carry the triggering event id")
        self._check_unique(first_turn.id)
        self._prune_idle()

        now = self._clock()
        conv = Conversation(turns=[first_turn], updated_at=now)
        self._conversations[first_turn.id] = conv
        self._index[first_turn.id] = conv
        logger.debug("Created conversation rooted at %s", first_turn.id)

        self._enforce_limit()
        return conv

    def append(self, conversation: Conversation, turn: Turn) -> None:
        """Add *turn* to the end of *conversation*.  No de-duplication."""
        self._check_unique(turn.id)
        root = conversation.root_id
        self._last_append = (turn.id, conversation.updated_at, self._successor(root))

        conversation.turns.append(turn)
        conversation.updated_at = self._clock()
        self._index[turn.id] = conversation
        if root in self._conversations:
            self._conversations.move_to_end(root)

    def discard(self, conversation: Conversation, turn: Turn) -> None:
        """Roll back *turn*, which must be the conversation's last turn.

        The conversation gets back its previous activity time and recency
        position.  A conversation left without turns is unregistered.
        """
        if not conversation.turns or conversation.turns[-1] is not turn:
            raise ValueError(f"turn {turn.id} is not the last turn of its conversation")
        root = conversation.root_id
        conversation.turns.pop()
        self._index.pop(turn.id, None)

        undo, self._last_append = self._last_append, None
        if not conversation.turns:
            self._conversations.pop(root, None)
            logger.debug("Dropped empty conversation rooted at %s", root)
        elif undo is not None and undo[0] == turn.id:
            _, previous_updated_at, successor = undo
            conversation.updated_at = previous_updated_at
            self._reposition(root, successor)

    # ------------------------------------------------------------------
    # Recency order
    # ------------------------------------------------------------------

    def _successor(self, root: str) -> Optional[str]:
        keys = iter(self._conversations)
        for key in keys:
            if key == root:
                return next(keys, None)
        return None

    def _reposition(self, root: str, successor: Optional[str]) -> None:
        """Move *root* back in front of *successor* (or to the end)."""
        if root not in self._conversations:
            return
        if successor is None or successor not in self._conversations:
            self._conversations.move_to_end(root)
            return
        conv = self._conversations.pop(root)
        reordered: "OrderedDict[str, Conversation]" = OrderedDict()
        for key, value in self._conversations.items():
            if key == successor:
                reordered[root] = conv
            reordered[key] = value
        self._conversations = reordered

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _check_unique(self, turn_id: str) -> None:
        if turn_id in self._index:
            raise DuplicateTurnError(f"turn {turn_id} already belongs to a conversation")

    def _evict(self, root: str) -> None:
        conv = self._conversations.pop(root)
        for t in conv.turns:
            self._index.pop(t.id, None)

    def _enforce_limit(self) -> None:
        if self._max_conversations is None:
            return
        while len(self._conversations) > self._max_conversations:
            root = next(iter(self._conversations))
            self._evict(root)
            logger.info("Evicted conversation %s (limit %d reached)",
                        root, self._max_conversations)

    def _prune_idle(self) -> None:
        if self._max_idle_seconds is None:
            return
        cutoff = self._clock() - self._max_idle_seconds
        stale = [root for root, conv in self._conversations.items()
                 if conv.updated_at < cutoff]
        for root in stale:
            self._evict(root)
        if stale:
            logger.info("Pruned %d idle conversation(s)", len(stale))
