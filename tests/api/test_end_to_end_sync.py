"""End-to-end: SyncController over HttpChatTransport against the in-process server."""

from uuid import uuid4

import pytest

from branchchat.client.transport import TransportError
from branchchat.sync.controller import SyncController
from branchchat.tree.navigator import active_path, sibling_info
from branchchat.tree.store import check_invariants
from tests.fixtures import SEEDED_BOT_ID, SEEDED_USER_ID


@pytest.fixture
async def chat_id(http_transport):
    chat = await http_transport.create_chat("Sync Test")
    return chat.id


@pytest.fixture
def sync(http_transport):
    return SyncController(http_transport)


async def build_exchange(sync: SyncController, chat_id: str) -> list[str]:
    """user -> bot -> user, returning node ids in order."""
    await sync.load(chat_id)
    conv = await sync.add_message(chat_id, None, "Hello", SEEDED_USER_ID, False)
    root = conv.tail_id
    conv = await sync.add_message(chat_id, root, "Hi there", SEEDED_BOT_ID, True)
    reply = conv.tail_id
    conv = await sync.add_message(chat_id, reply, "How are you?", SEEDED_USER_ID, False)
    return [root, reply, conv.tail_id]


class TestEndToEnd:
    async def test_client_and_server_agree(self, sync, http_transport, chat_id):
        ids = await build_exchange(sync, chat_id)
        local = sync.get(chat_id)
        server = await SyncController(http_transport).load(chat_id)

        assert active_path(local) == tuple(ids)
        assert server.nodes == local.nodes
        assert server.tail_id == local.tail_id

    async def test_branch_and_switch(self, sync, http_transport, chat_id):
        root, reply, question = await build_exchange(sync, chat_id)

        conv = await sync.create_branch(chat_id, reply, "Another greeting")
        alt = conv.tail_id
        assert sibling_info(conv, alt).label == "2/2"

        conv = await sync.switch_branch_direction(chat_id, alt, "prev")
        assert conv.tail_id == question

        server = await SyncController(http_transport).load(chat_id)
        assert server.tail_id == question
        assert server.nodes[root].child_ids == (reply, alt)
        check_invariants(server)

    async def test_edit_and_delete(self, sync, http_transport, chat_id):
        root, reply, question = await build_exchange(sync, chat_id)

        await sync.edit_message(chat_id, reply, "Hello again")
        conv = await sync.delete_message(chat_id, question)
        assert conv.tail_id == reply

        server = await SyncController(http_transport).load(chat_id)
        assert server.nodes[reply].message == "Hello again"
        assert question not in server.nodes

    async def test_delete_twice_is_harmless(self, sync, http_transport, chat_id):
        _, _, question = await build_exchange(sync, chat_id)
        await sync.delete_message(chat_id, question)

        response = await http_transport.delete_message(chat_id, question)
        assert response.success

    async def test_server_rejection_rolls_back(self, sync, http_transport, chat_id):
        root, _, _ = await build_exchange(sync, chat_id)
        other = await http_transport.create_chat("Other")
        taken = str(uuid4())
        await http_transport.add_message(other.id, None, "x", SEEDED_USER_ID, False, node_id=taken)
        before = sync.get(chat_id)

        # Unknown locally but already stored on the server, so the add is refused with 409
        with pytest.raises(TransportError) as exc_info:
            await sync.add_message(chat_id, root, "dup", SEEDED_BOT_ID, True, node_id=taken)
        assert exc_info.value.status_code == 409
        assert sync.get(chat_id) is before

    async def test_chat_and_speaker_listing(self, http_transport, chat_id):
        chats = await http_transport.list_chats()
        assert chat_id in [c.id for c in chats]

        await http_transport.rename_chat(chat_id, "Renamed")
        speaker = await http_transport.create_speaker("Aria")
        speakers = await http_transport.list_speakers()
        assert speaker.id in [s.id for s in speakers]

        await http_transport.delete_chat(chat_id)
        with pytest.raises(TransportError) as exc_info:
            await http_transport.get_conversation(chat_id)
        assert exc_info.value.status_code == 404
        assert exc_info.value.detail == f"Chat not found: {chat_id}"
