"""Chat service: durable storage for conversations, backed by the branch engine.

Every tree mutation is computed by `branchchat.tree.engine` on the cached
Conversation and persisted as a node-level diff in one transaction, so the
stored rows always satisfy the same invariants as the client's snapshot.
"""

import asyncio
import logging
from pathlib import Path
from uuid import UUID, uuid4

import yaml

from branchchat.chats.schemas import (
    AddMessageRequest,
    AddMessageResponse,
    CreateChatRequest,
    CreateSpeakerRequest,
    PatchChatRequest,
    SuccessResponse,
)
from branchchat.db.connection import Database
from branchchat.models import ChatMeta, ChatNode, Conversation, Speaker
from branchchat.sync.cache import ConversationCache
from branchchat.tree import engine
from branchchat.tree.engine import DuplicateNodeError
from branchchat.tree.navigator import TreeStructureError
from branchchat.tree.store import build_conversation, check_invariants
from branchchat.utils.clock import now_ms
from branchchat.utils.json import json_list_str, parse_json_list
from branchchat.wire.codec import WireConversation, encode_conversation

logger = logging.getLogger(__name__)

_DEFAULT_SPEAKERS_PATH = Path(__file__).parent.parent / "default_speakers.yml"


class ChatService:
    """Chat, message and speaker CRUD over SQLite with a hot-chat cache."""

    def __init__(self, db: Database, cache: ConversationCache | None = None) -> None:
        self._db = db
        self._cache = cache if cache is not None else ConversationCache()
        # One connection, one writer: transactions must not interleave
        self._write_lock = asyncio.Lock()

    # -- Chats --

    async def list_chats(self) -> list[ChatMeta]:
        """All chats, most recently updated first."""
        rows = await self._db.fetchall(
            "SELECT * FROM chats ORDER BY updated_at DESC, created_at DESC"
        )
        return [self._chat_meta_from_row(row) for row in rows]

    async def create_chat(self, request: CreateChatRequest) -> ChatMeta:
        """Create an empty chat. Its first message becomes the root."""
        chat_id = str(uuid4())
        now = now_ms()
        async with self._write_lock:
            await self._db.execute(
                """INSERT INTO chats
                   (id, name, character_ids, persona_id, tags, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    chat_id,
                    request.name,
                    json_list_str(request.character_ids),
                    request.persona_id,
                    json_list_str(request.tags),
                    now,
                    now,
                ),
            )
        return ChatMeta(
            id=chat_id,
            name=request.name,
            character_ids=request.character_ids,
            persona_id=request.persona_id,
            tags=request.tags,
            created_at=now,
            updated_at=now,
        )

    async def rename_chat(self, chat_id: str, request: PatchChatRequest) -> SuccessResponse:
        if await self._db.fetchone("SELECT id FROM chats WHERE id = ?", (chat_id,)) is None:
            raise ChatNotFoundError(chat_id)
        if request.name is None:
            return SuccessResponse()

        async with self._write_lock:
            await self._db.execute(
                "UPDATE chats SET name = ?, updated_at = ? WHERE id = ?",
                (request.name, now_ms(), chat_id),
            )
        cached = self._cache.get(chat_id)
        if cached is not None:
            self._cache.set(cached.model_copy(update={"name": request.name}))
        return SuccessResponse()

    async def delete_chat(self, chat_id: str) -> SuccessResponse:
        """Delete a chat and all of its nodes. Deleting a missing chat succeeds."""
        async with self._write_lock:
            await self._db.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
        self._cache.invalidate(chat_id)
        return SuccessResponse()

    async def get_chat(self, chat_id: str) -> WireConversation:
        """The wire-encoded conversation, including the user speaker."""
        conversation = await self._load(chat_id)
        speakers = await self._speakers_for(conversation)
        return encode_conversation(conversation, extra_speakers=speakers)

    # -- Messages --

    async def add_message(self, chat_id: str, request: AddMessageRequest) -> AddMessageResponse:
        """Append a message under parent_id and make it the active branch.

        A client-supplied id must be a UUID not used by any stored message.
        """
        if request.id is not None:
            _validate_message_id(request.id)

        async with self._write_lock:
            conversation = await self._load(chat_id)
            if request.id is not None and await self._message_exists(request.id):
                raise DuplicateNodeError(request.id)

            after = engine.add_message(
                conversation,
                request.parent_id,
                request.content,
                request.speaker_id,
                request.is_bot,
                created_at=request.created_at if request.created_at is not None else now_ms(),
                node_id=request.id,
            )
            await self._persist(conversation, after)

        node = after.nodes[after.tail_id]
        return AddMessageResponse(id=node.id, created_at=node.created_at)

    async def edit_message(self, chat_id: str, node_id: str, content: str) -> SuccessResponse:
        async with self._write_lock:
            conversation = await self._load(chat_id)
            after = engine.edit_message(conversation, node_id, content, updated_at=now_ms())
            await self._persist(conversation, after)
        return SuccessResponse()

    async def delete_message(self, chat_id: str, node_id: str) -> SuccessResponse:
        """Delete a message and its subtree. A message that is already gone succeeds."""
        async with self._write_lock:
            conversation = await self._load(chat_id)
            if node_id not in conversation:
                return SuccessResponse()
            after = engine.delete_message(conversation, node_id)
            await self._persist(conversation, after)
        return SuccessResponse()

    async def switch_branch(self, chat_id: str, target_leaf_id: str) -> SuccessResponse:
        async with self._write_lock:
            conversation = await self._load(chat_id)
            after = engine.switch_branch(conversation, target_leaf_id)
            await self._persist(conversation, after)
        return SuccessResponse()

    # -- Speakers --

    async def list_speakers(self) -> list[Speaker]:
        rows = await self._db.fetchall("SELECT * FROM speakers ORDER BY rowid")
        return [self._speaker_from_row(row) for row in rows]

    async def create_speaker(self, request: CreateSpeakerRequest) -> Speaker:
        speaker = Speaker(
            id=str(uuid4()),
            name=request.name,
            avatar_url=request.avatar_url,
            color=request.color,
            is_user=request.is_user,
        )
        async with self._write_lock:
            await self._insert_speaker(speaker)
        return speaker

    async def seed_default_speakers(self, path: Path | None = None) -> int:
        """Insert the default speakers into an empty speakers table.

        Returns the number of speakers inserted (0 if any already exist).
        """
        row = await self._db.fetchone("SELECT COUNT(*) AS n FROM speakers")
        if row is not None and row["n"] > 0:
            return 0

        with open(path or _DEFAULT_SPEAKERS_PATH) as f:
            data = yaml.safe_load(f) or {}
        speakers = [Speaker.model_validate(item) for item in data.get("speakers", [])]

        async with self._write_lock:
            for speaker in speakers:
                await self._insert_speaker(speaker)
        logger.info("Seeded %d default speakers", len(speakers))
        return len(speakers)

    # -- Internals --

    async def _load(self, chat_id: str) -> Conversation:
        """Cached conversation, or rebuild it from rows and cache it."""
        cached = self._cache.get(chat_id)
        if cached is not None:
            return cached

        chat = await self._db.fetchone("SELECT * FROM chats WHERE id = ?", (chat_id,))
        if chat is None:
            raise ChatNotFoundError(chat_id)
        rows = await self._db.fetchall(
            "SELECT * FROM chat_nodes WHERE chat_id = ? ORDER BY rowid", (chat_id,)
        )

        try:
            conversation = build_conversation(
                chat_id,
                chat["name"],
                [self._node_from_row(row) for row in rows],
                character_ids=parse_json_list(chat["character_ids"]),
                persona_id=chat["persona_id"],
                tags=parse_json_list(chat["tags"]),
            )
            check_invariants(conversation)
        except TreeStructureError as e:
            logger.error("Chat %s failed the integrity check: %s", chat_id, e)
            raise

        self._cache.set(conversation)
        return conversation

    async def _persist(self, before: Conversation, after: Conversation) -> None:
        """Write the node diff between two snapshots, then cache the new one."""
        diff = engine.changed_nodes(before, after)
        if diff.is_empty:
            return

        # On failure the cache still holds `before`, which matches the rolled-back rows
        async with self._db.transaction():
            if diff.removed:
                placeholders = ", ".join("?" for _ in diff.removed)
                await self._db.execute(
                    f"DELETE FROM chat_nodes WHERE id IN ({placeholders})",
                    tuple(diff.removed),
                )
            for node_id in diff.added:
                await self._insert_node(after.id, after.nodes[node_id])
            for node_id in diff.updated:
                await self._update_node(after.nodes[node_id])
            await self._db.execute(
                "UPDATE chats SET updated_at = ? WHERE id = ?", (now_ms(), after.id)
            )

        self._cache.set(after)

    async def _insert_node(self, chat_id: str, node: ChatNode) -> None:
        await self._db.execute(
            """INSERT INTO chat_nodes
               (id, chat_id, parent_id, child_ids, active_child_index,
                speaker_id, message, is_bot, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                node.id,
                chat_id,
                node.parent_id,
                json_list_str(node.child_ids),
                node.active_child_index,
                node.speaker_id,
                node.message,
                int(node.is_bot),
                node.created_at,
                node.updated_at,
            ),
        )

    async def _update_node(self, node: ChatNode) -> None:
        await self._db.execute(
            """UPDATE chat_nodes
               SET child_ids = ?, active_child_index = ?, message = ?, updated_at = ?
               WHERE id = ?""",
            (
                json_list_str(node.child_ids),
                node.active_child_index,
                node.message,
                node.updated_at,
                node.id,
            ),
        )

    async def _insert_speaker(self, speaker: Speaker) -> None:
        await self._db.execute(
            """INSERT INTO speakers (id, name, avatar_url, color, is_user)
               VALUES (?, ?, ?, ?, ?)""",
            (speaker.id, speaker.name, speaker.avatar_url, speaker.color, int(speaker.is_user)),
        )

    async def _message_exists(self, node_id: str) -> bool:
        row = await self._db.fetchone("SELECT id FROM chat_nodes WHERE id = ?", (node_id,))
        return row is not None

    async def _speakers_for(self, conversation: Conversation) -> list[Speaker]:
        """Speakers referenced by the conversation, plus the user speaker."""
        referenced = {node.speaker_id for node in conversation.iter_nodes()}
        speakers = await self.list_speakers()
        result = [s for s in speakers if s.id in referenced]
        if not any(s.is_user for s in result):
            user = next((s for s in speakers if s.is_user), None)
            if user is not None:
                result.append(user)
        return result

    @staticmethod
    def _node_from_row(row) -> ChatNode:
        child_ids = tuple(parse_json_list(row["child_ids"]))
        return ChatNode(
            id=row["id"],
            parent_id=row["parent_id"],
            child_ids=child_ids,
            active_child_index=row["active_child_index"],
            speaker_id=row["speaker_id"],
            message=row["message"],
            is_bot=bool(row["is_bot"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _chat_meta_from_row(row) -> ChatMeta:
        return ChatMeta(
            id=row["id"],
            name=row["name"],
            character_ids=parse_json_list(row["character_ids"]),
            persona_id=row["persona_id"],
            tags=parse_json_list(row["tags"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _speaker_from_row(row) -> Speaker:
        return Speaker(
            id=row["id"],
            name=row["name"],
            avatar_url=row["avatar_url"],
            color=row["color"],
            is_user=bool(row["is_user"]),
        )


def _validate_message_id(node_id: str) -> None:
    try:
        UUID(node_id)
    except ValueError:
        raise InvalidMessageIdError(node_id) from None


class ChatNotFoundError(Exception):
    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        super().__init__(f"Chat not found: {chat_id}")


class InvalidMessageIdError(Exception):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Message id must be a UUID: {node_id}")
