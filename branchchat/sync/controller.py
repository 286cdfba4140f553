"""Sync controller: optimistic tree mutations against a durable server.

Every mutation runs the same protocol:

1. Snapshot the cached conversation.
2. Apply the branch engine transition locally and swap the result into the
   cache, so readers see the change immediately. Any in-flight fetch for the
   conversation is cancelled and fetches finishing meanwhile are discarded.
3. Await the server. On success, merge its answer into the current snapshot
   unless a newer mutation with the same key has been issued since. On
   failure, restore the snapshot if nothing newer was applied on top of it;
   otherwise schedule a resync from the server once the conversation is idle.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from uuid import uuid4

from pydantic import BaseModel

from branchchat.client.transport import ChatTransport, TransportError
from branchchat.models import Conversation
from branchchat.sync.cache import ConversationCache
from branchchat.sync.commands import (
    AddMessageCommand,
    DeleteMessageCommand,
    EditMessageCommand,
    MutationCommand,
    SwitchBranchCommand,
)
from branchchat.tree import engine
from branchchat.tree.engine import Direction
from branchchat.tree.navigator import (
    InvalidBranchTargetError,
    TreeStructureError,
    resolve_leaf_of,
)
from branchchat.utils.clock import now_ms
from branchchat.wire.codec import WireConversation, decode_conversation

logger = logging.getLogger(__name__)


class SyncController:
    """Owns the client-side copy of each conversation and keeps it in step with the server."""

    def __init__(
        self, transport: ChatTransport, cache: ConversationCache | None = None,
    ) -> None:
        self._transport = transport
        self._cache = cache if cache is not None else ConversationCache()
        self._sequence = itertools.count(1)
        # (conversation_id, command key) -> sequence number of the newest command
        self._latest: dict[tuple[str, str], int] = {}
        self._pending: dict[str, int] = defaultdict(int)
        self._epochs: dict[str, int] = defaultdict(int)
        self._fetches: dict[str, asyncio.Task[WireConversation]] = {}
        self._needs_resync: set[str] = set()

    @property
    def cache(self) -> ConversationCache:
        return self._cache

    def get(self, conversation_id: str) -> Conversation | None:
        """Current snapshot, or None if the conversation is not loaded."""
        return self._cache.get(conversation_id)

    def is_pending(self, conversation_id: str) -> bool:
        return self._pending.get(conversation_id, 0) > 0

    # -- Reads --

    async def load(self, conversation_id: str) -> Conversation:
        """Return the cached conversation, fetching it on first use."""
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached
        return await self.refresh(conversation_id)

    async def refresh(self, conversation_id: str) -> Conversation:
        """Fetch the authoritative conversation and cache it.

        The result is dropped in favour of the current snapshot if a mutation
        is pending or was issued while the fetch was in flight.
        """
        epoch = self._epochs[conversation_id]
        task = asyncio.ensure_future(self._transport.get_conversation(conversation_id))
        self._fetches[conversation_id] = task
        try:
            wire = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.debug("Fetch of %s superseded by a local mutation", conversation_id)
            return self._require(conversation_id)
        finally:
            if self._fetches.get(conversation_id) is task:
                del self._fetches[conversation_id]

        if self.is_pending(conversation_id) or self._epochs[conversation_id] != epoch:
            logger.debug("Discarding stale fetch of %s", conversation_id)
            return self._require(conversation_id)

        conversation = decode_conversation(wire)
        self._cache.set(conversation)
        self._needs_resync.discard(conversation_id)
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete the whole chat on the server and drop the cached copy."""
        self._cancel_fetch(conversation_id)
        await self._transport.delete_chat(conversation_id)
        self._cache.invalidate(conversation_id)
        self._needs_resync.discard(conversation_id)

    # -- Mutations --

    async def add_message(
        self,
        conversation_id: str,
        parent_id: str | None,
        content: str,
        speaker_id: str,
        is_bot: bool,
        created_at: int | None = None,
        node_id: str | None = None,
    ) -> Conversation:
        """Append a message; the id is generated here so the server can confirm it."""
        command = AddMessageCommand(
            parent_id=parent_id,
            content=content,
            speaker_id=speaker_id,
            is_bot=is_bot,
            created_at=created_at if created_at is not None else now_ms(),
            node_id=node_id or str(uuid4()),
        )
        return await self._execute(conversation_id, command)

    async def create_branch(
        self,
        conversation_id: str,
        node_id: str,
        content: str | None = None,
        created_at: int | None = None,
        new_node_id: str | None = None,
    ) -> Conversation:
        """Add an alternate sibling of node_id, authored like node_id."""
        defaults = engine.branch_defaults(self._require(conversation_id), node_id, content)
        return await self.add_message(
            conversation_id,
            defaults.parent_id,
            defaults.content,
            defaults.speaker_id,
            defaults.is_bot,
            created_at=created_at,
            node_id=new_node_id,
        )

    async def edit_message(
        self, conversation_id: str, node_id: str, content: str,
    ) -> Conversation:
        command = EditMessageCommand(node_id=node_id, content=content, updated_at=now_ms())
        return await self._execute(conversation_id, command)

    async def delete_message(self, conversation_id: str, node_id: str) -> Conversation:
        return await self._execute(conversation_id, DeleteMessageCommand(node_id=node_id))

    async def switch_branch(self, conversation_id: str, target_id: str) -> Conversation:
        """Activate the branch containing target_id; the server is sent the resolved leaf."""
        conversation = self._require(conversation_id)
        if target_id not in conversation.nodes:
            raise InvalidBranchTargetError(target_id, "node not found")
        leaf_id = resolve_leaf_of(conversation, target_id)
        return await self._execute(conversation_id, SwitchBranchCommand(leaf_id=leaf_id))

    async def switch_branch_direction(
        self, conversation_id: str, node_id: str, direction: Direction,
    ) -> Conversation:
        """Step to the previous/next sibling. At a boundary nothing happens and no request is sent."""
        conversation = self._require(conversation_id)
        target_id = engine.sibling_target(conversation, node_id, direction)
        if target_id is None:
            return conversation
        return await self.switch_branch(conversation_id, target_id)

    # -- Protocol --

    async def _execute(self, conversation_id: str, command: MutationCommand) -> Conversation:
        snapshot = self._require(conversation_id)
        optimistic = command.apply(snapshot)

        sequence = next(self._sequence)
        self._latest[(conversation_id, command.key)] = sequence
        self._epochs[conversation_id] += 1
        self._pending[conversation_id] += 1
        self._cancel_fetch(conversation_id)
        self._cache.set(optimistic)

        try:
            response = await command.send(self._transport, conversation_id)
            if not command.succeeded(response):
                raise TransportError(f"server rejected {command.key}")
        except asyncio.CancelledError:
            self._settle(conversation_id, command, sequence)
            self._roll_back(conversation_id, snapshot, optimistic, command)
            raise
        except Exception:
            self._settle(conversation_id, command, sequence)
            self._roll_back(conversation_id, snapshot, optimistic, command)
            await self._resync_if_idle(conversation_id)
            raise

        is_latest = self._settle(conversation_id, command, sequence)
        if is_latest:
            self._reconcile(conversation_id, command, response)
        else:
            logger.debug(
                "Discarding stale response for %s on %s", command.key, conversation_id,
            )
        await self._resync_if_idle(conversation_id)
        current = self._cache.get(conversation_id)
        return current if current is not None else optimistic

    def _settle(self, conversation_id: str, command: MutationCommand, sequence: int) -> bool:
        """Mark a command finished. Returns True if it is still the newest for its key."""
        self._pending[conversation_id] -= 1
        if self._pending[conversation_id] <= 0:
            del self._pending[conversation_id]

        key = (conversation_id, command.key)
        if self._latest.get(key) == sequence:
            del self._latest[key]
            return True
        return False

    def _reconcile(
        self, conversation_id: str, command: MutationCommand, response: BaseModel,
    ) -> None:
        current = self._cache.get(conversation_id)
        if current is None:
            return
        self._cache.set(command.reconcile(current, response))

    def _roll_back(
        self,
        conversation_id: str,
        snapshot: Conversation,
        optimistic: Conversation,
        command: MutationCommand,
    ) -> None:
        current = self._cache.get(conversation_id)
        if current is optimistic:
            logger.warning("Rolling back %s on %s", command.key, conversation_id)
            self._cache.set(snapshot)
            return
        if current is None:
            return
        # Newer optimistic state sits on top of ours; only the server can untangle it
        logger.warning(
            "%s failed on %s after newer local changes; scheduling resync",
            command.key, conversation_id,
        )
        self._needs_resync.add(conversation_id)

    async def _resync_if_idle(self, conversation_id: str) -> None:
        if self.is_pending(conversation_id) or conversation_id not in self._needs_resync:
            return
        # The flag stays set until a fetch lands, so a superseded resync is retried
        try:
            await self.refresh(conversation_id)
        except (TransportError, TreeStructureError) as e:
            logger.warning("Resync of %s failed, dropping cached copy: %s", conversation_id, e)
            self._cache.invalidate(conversation_id)
            self._needs_resync.discard(conversation_id)

    def _cancel_fetch(self, conversation_id: str) -> None:
        task = self._fetches.pop(conversation_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._cache.get(conversation_id)
        if conversation is None:
            raise ConversationNotLoadedError(conversation_id)
        return conversation


class ConversationNotLoadedError(Exception):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not loaded: {conversation_id}")
