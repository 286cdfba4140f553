"""Client-side synchronization: cache, mutation commands, optimistic controller."""

from branchchat.sync.cache import ConversationCache
from branchchat.sync.controller import ConversationNotLoadedError, SyncController

__all__ = ["ConversationCache", "ConversationNotLoadedError", "SyncController"]
