"""Abstract interface to the persistence collaborator (the durable source of truth)."""

from abc import ABC, abstractmethod

from branchchat.chats.schemas import AddMessageResponse, SuccessResponse
from branchchat.models import ChatMeta, Speaker
from branchchat.wire.codec import WireConversation


class ChatTransport(ABC):
    """Requests the sync controller and chat list screens issue against the server."""

    # -- Conversation tree --

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> WireConversation:
        """Fetch the wire-encoded conversation."""
        ...

    @abstractmethod
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
        """Persist a new node. Returns the confirmed id and creation time."""
        ...

    @abstractmethod
    async def edit_message(
        self, conversation_id: str, node_id: str, content: str,
    ) -> SuccessResponse:
        ...

    @abstractmethod
    async def delete_message(self, conversation_id: str, node_id: str) -> SuccessResponse:
        """Delete a node and its subtree. Deleting an absent node succeeds."""
        ...

    @abstractmethod
    async def switch_branch(
        self, conversation_id: str, target_leaf_id: str,
    ) -> SuccessResponse:
        ...

    # -- Chats and speakers --

    @abstractmethod
    async def list_chats(self) -> list[ChatMeta]:
        ...

    @abstractmethod
    async def create_chat(
        self,
        name: str,
        character_ids: list[str] | None = None,
        persona_id: str | None = None,
        tags: list[str] | None = None,
    ) -> ChatMeta:
        ...

    @abstractmethod
    async def rename_chat(self, conversation_id: str, name: str) -> SuccessResponse:
        ...

    @abstractmethod
    async def delete_chat(self, conversation_id: str) -> SuccessResponse:
        ...

    @abstractmethod
    async def list_speakers(self) -> list[Speaker]:
        ...

    @abstractmethod
    async def create_speaker(
        self,
        name: str,
        is_user: bool = False,
        avatar_url: str | None = None,
        color: str | None = None,
    ) -> Speaker:
        ...


class TransportError(Exception):
    """A request to the persistence collaborator failed or timed out."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        self.detail = detail
        self.status_code = status_code
        prefix = f"HTTP {status_code}: " if status_code is not None else ""
        super().__init__(f"{prefix}{detail}")
