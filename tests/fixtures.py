"""Shared test helpers: conversation builders, a scriptable transport, API helpers."""

import asyncio
from collections import defaultdict, deque
from collections.abc import Callable, Iterable
from uuid import uuid4

from httpx import AsyncClient

from branchchat.chats.schemas import AddMessageResponse, SuccessResponse
from branchchat.client.transport import ChatTransport, TransportError
from branchchat.models import ChatMeta, ChatNode, Conversation, Speaker
from branchchat.tree import engine
from branchchat.tree.store import build_conversation
from branchchat.wire.codec import WireConversation, encode_conversation

BASE_TIME = 1_700_000_000_000

USER = Speaker(id="user-1", name="You", is_user=True)
BOT = Speaker(id="bot-1", name="Bot")
SPEAKERS = (USER, BOT)

# Ids of the speakers seeded from default_speakers.yml
SEEDED_USER_ID = "00000000-0000-4000-8000-000000000001"
SEEDED_BOT_ID = "00000000-0000-4000-8000-000000000002"


# -- Conversation builders --


def make_node(
    node_id: str,
    parent_id: str | None = None,
    child_ids: Iterable[str] = (),
    active_child_index: int | None = None,
    speaker_id: str = USER.id,
    message: str | None = None,
    is_bot: bool = False,
    created_at: int = BASE_TIME,
) -> ChatNode:
    return ChatNode(
        id=node_id,
        parent_id=parent_id,
        child_ids=tuple(child_ids),
        active_child_index=active_child_index,
        speaker_id=speaker_id,
        message=message if message is not None else f"Message {node_id}",
        is_bot=is_bot,
        created_at=created_at,
    )


def make_tree(
    edges: dict[str, list[str]],
    active: dict[str, int] | None = None,
    bot_nodes: Iterable[str] = (),
    conversation_id: str = "conv-1",
    name: str = "Test Chat",
    speakers: Iterable[Speaker] = SPEAKERS,
) -> Conversation:
    """Build a conversation from a parent -> children mapping.

    The first key is the root. Each parent's active child defaults to its
    last child (what add_message leaves behind); override per node with
    `active`. Nodes listed in bot_nodes are authored by BOT.
    """
    active = active or {}
    bots = set(bot_nodes)
    root_id = next(iter(edges))

    parents: dict[str, str] = {}
    for parent_id, children in edges.items():
        for child_id in children:
            parents[child_id] = parent_id

    # Breadth-first so node order matches creation order
    order: list[str] = []
    queue = deque([root_id])
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        queue.extend(edges.get(node_id, []))

    nodes = []
    for i, node_id in enumerate(order):
        children = edges.get(node_id, [])
        nodes.append(
            make_node(
                node_id,
                parent_id=parents.get(node_id),
                child_ids=children,
                active_child_index=active.get(node_id, len(children) - 1) if children else None,
                speaker_id=BOT.id if node_id in bots else USER.id,
                is_bot=node_id in bots,
                created_at=BASE_TIME + i,
            )
        )
    return build_conversation(conversation_id, name, nodes, speakers)


def make_linear(n: int, conversation_id: str = "conv-1") -> Conversation:
    """m0 -> m1 -> ... -> m{n-1}, alternating user and bot, starting with the user."""
    ids = [f"m{i}" for i in range(n)]
    edges = {ids[i]: [ids[i + 1]] for i in range(n - 1)}
    edges.setdefault(ids[-1], [])
    return make_tree(edges, bot_nodes=ids[1::2], conversation_id=conversation_id)


def make_empty(conversation_id: str = "conv-1", name: str = "Empty Chat") -> Conversation:
    return build_conversation(conversation_id, name, [], SPEAKERS)


def all_child_ids(conversation: Conversation) -> set[str]:
    return {c for node in conversation.iter_nodes() for c in node.child_ids}


# -- Scriptable transport --


class FakeTransport(ChatTransport):
    """In-memory persistence collaborator driven by the branch engine.

    Requests are applied to `server` when they arrive, in issue order. Tests
    can hold a response (`hold`) or make a request fail (`fail`); both apply
    to the next call of that method only. Failed requests change nothing.
    """

    def __init__(self, conversations: Iterable[Conversation] = ()) -> None:
        self.server: dict[str, Conversation] = {c.id: c for c in conversations}
        self.calls: list[tuple] = []
        self.assigned_ids: dict[str, str] = {}
        self.server_created_at: int | None = None
        self.speakers: list[Speaker] = list(SPEAKERS)
        self._gates: dict[str, deque[asyncio.Event]] = defaultdict(deque)
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)

    def hold(self, method: str) -> asyncio.Event:
        """Hold the response of the next `method` call until the event is set."""
        gate = asyncio.Event()
        self._gates[method].append(gate)
        return gate

    def fail(self, method: str, error: Exception | None = None) -> None:
        self._failures[method].append(error or TransportError("server unavailable", 503))

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def _respond(self, method: str, args: tuple, apply: Callable[[], object]) -> object:
        self.calls.append((method, *args))
        gate = self._gates[method].popleft() if self._gates[method] else None
        error = self._failures[method].popleft() if self._failures[method] else None
        result = None if error is not None else apply()
        if gate is not None:
            await gate.wait()
        if error is not None:
            raise error
        return result

    # -- Conversation tree --

    async def get_conversation(self, conversation_id: str) -> WireConversation:
        def apply():
            conversation = self.server.get(conversation_id)
            if conversation is None:
                raise TransportError(f"Chat not found: {conversation_id}", 404)
            return encode_conversation(conversation)

        return await self._respond("get_conversation", (conversation_id,), apply)

    async def add_message(
        self,
        conversation_id: str,
        parent_id: str | None,
        content: str,
        speaker_id: str,
        is_bot: bool,
        created_at: int | None = None,
        node_id: str | None = None,
    ) -> AddMessageResponse:
        def apply():
            server_id = self.assigned_ids.get(node_id, node_id)
            stamp = self.server_created_at if self.server_created_at is not None else created_at
            updated = engine.add_message(
                self.server[conversation_id], parent_id, content, speaker_id, is_bot,
                created_at=stamp, node_id=server_id,
            )
            self.server[conversation_id] = updated
            node = updated.nodes[updated.tail_id]
            return AddMessageResponse(id=node.id, created_at=node.created_at)

        return await self._respond("add_message", (conversation_id, parent_id, node_id), apply)

    async def edit_message(
        self, conversation_id: str, node_id: str, content: str,
    ) -> SuccessResponse:
        def apply():
            self.server[conversation_id] = engine.edit_message(
                self.server[conversation_id], node_id, content,
            )
            return SuccessResponse()

        return await self._respond("edit_message", (conversation_id, node_id, content), apply)

    async def delete_message(self, conversation_id: str, node_id: str) -> SuccessResponse:
        def apply():
            conversation = self.server[conversation_id]
            if node_id in conversation:
                self.server[conversation_id] = engine.delete_message(conversation, node_id)
            return SuccessResponse()

        return await self._respond("delete_message", (conversation_id, node_id), apply)

    async def switch_branch(
        self, conversation_id: str, target_leaf_id: str,
    ) -> SuccessResponse:
        def apply():
            self.server[conversation_id] = engine.switch_branch(
                self.server[conversation_id], target_leaf_id,
            )
            return SuccessResponse()

        return await self._respond(
            "switch_branch", (conversation_id, target_leaf_id), apply,
        )

    # -- Chats and speakers --

    async def list_chats(self) -> list[ChatMeta]:
        return [
            ChatMeta(id=c.id, name=c.name, created_at=BASE_TIME, updated_at=BASE_TIME)
            for c in self.server.values()
        ]

    async def create_chat(
        self,
        name: str,
        character_ids: list[str] | None = None,
        persona_id: str | None = None,
        tags: list[str] | None = None,
    ) -> ChatMeta:
        conversation = build_conversation(
            str(uuid4()), name, [], character_ids=character_ids or [],
            persona_id=persona_id, tags=tags or [],
        )
        self.server[conversation.id] = conversation
        return ChatMeta(
            id=conversation.id, name=name, created_at=BASE_TIME, updated_at=BASE_TIME,
        )

    async def rename_chat(self, conversation_id: str, name: str) -> SuccessResponse:
        self.server[conversation_id] = self.server[conversation_id].model_copy(
            update={"name": name}
        )
        return SuccessResponse()

    async def delete_chat(self, conversation_id: str) -> SuccessResponse:
        def apply():
            self.server.pop(conversation_id, None)
            return SuccessResponse()

        return await self._respond("delete_chat", (conversation_id,), apply)

    async def list_speakers(self) -> list[Speaker]:
        return list(self.speakers)

    async def create_speaker(
        self,
        name: str,
        is_user: bool = False,
        avatar_url: str | None = None,
        color: str | None = None,
    ) -> Speaker:
        speaker = Speaker(
            id=str(uuid4()), name=name, is_user=is_user, avatar_url=avatar_url, color=color,
        )
        self.speakers.append(speaker)
        return speaker


async def wait_for_call(transport: FakeTransport, method: str, count: int = 1) -> None:
    """Yield to the event loop until `method` has been called `count` times."""
    for _ in range(100):
        if transport.count(method) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{method} was not called {count} time(s)")


# -- API-level helpers --


async def create_test_chat(client: AsyncClient, name: str = "Test Chat") -> dict:
    """Create a chat via the API and return the response JSON."""
    resp = await client.post("/api/chats", json={"name": name})
    assert resp.status_code == 201
    return resp.json()


async def add_test_message(
    client: AsyncClient,
    chat_id: str,
    parent_id: str | None,
    content: str = "Hello",
    speaker_id: str = SEEDED_USER_ID,
    is_bot: bool = False,
    message_id: str | None = None,
) -> str:
    """POST a message and return its id."""
    body: dict = {
        "parentId": parent_id,
        "content": content,
        "speakerId": speaker_id,
        "isBot": is_bot,
    }
    if message_id is not None:
        body["id"] = message_id
    resp = await client.post(f"/api/chats/{chat_id}/messages", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


async def create_chat_with_messages(client: AsyncClient, n_messages: int = 4) -> dict:
    """Create a chat with N alternating user/bot messages.

    Returns {"chat_id": str, "node_ids": [str, ...]} in creation order.
    """
    chat = await create_test_chat(client)
    chat_id = chat["id"]
    node_ids: list[str] = []
    parent_id: str | None = None
    for i in range(n_messages):
        is_bot = i % 2 == 1
        node_id = await add_test_message(
            client,
            chat_id,
            parent_id,
            content=f"Message {i + 1}",
            speaker_id=SEEDED_BOT_ID if is_bot else SEEDED_USER_ID,
            is_bot=is_bot,
        )
        node_ids.append(node_id)
        parent_id = node_id
    return {"chat_id": chat_id, "node_ids": node_ids}
