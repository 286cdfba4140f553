"""Conversation cache keyed by conversation id.

An explicit object handed to whoever needs it (sync controller, server
service), never a module-level singleton. Entries are immutable Conversation
snapshots, so `set` is an atomic swap from a reader's point of view.
"""

from collections import OrderedDict

from branchchat.models import Conversation

MAX_CACHED_CONVERSATIONS = 10


class ConversationCache:
    """LRU cache of hydrated conversations."""

    def __init__(self, max_entries: int = MAX_CACHED_CONVERSATIONS) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._entries: OrderedDict[str, Conversation] = OrderedDict()

    def get(self, conversation_id: str) -> Conversation | None:
        """Return the cached snapshot and mark it most recently used."""
        conversation = self._entries.get(conversation_id)
        if conversation is not None:
            self._entries.move_to_end(conversation_id)
        return conversation

    def set(self, conversation: Conversation) -> None:
        """Swap in a new snapshot, evicting the least recently used entry if full."""
        if conversation.id in self._entries:
            self._entries.move_to_end(conversation.id)
        elif len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
        self._entries[conversation.id] = conversation

    def invalidate(self, conversation_id: str) -> None:
        self._entries.pop(conversation_id, None)

    def invalidate_all(self) -> None:
        self._entries.clear()

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {"cached_conversations": len(self._entries), "max_entries": self._max_entries}
