"""Mutation commands: one object per optimistic operation.

A command knows how to apply itself to a snapshot (the optimistic phase), how
to ask the persistence collaborator for the same change, and how to merge the
server's answer back into whatever snapshot is current when it arrives.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from pydantic import BaseModel

from branchchat.chats.schemas import AddMessageResponse, SuccessResponse
from branchchat.client.transport import ChatTransport
from branchchat.models import Conversation
from branchchat.tree import engine


class MutationCommand(ABC):
    """Base class for optimistic tree mutations."""

    @property
    @abstractmethod
    def key(self) -> str:
        """Ordering key: a newer command with the same key supersedes an older one."""
        ...

    @abstractmethod
    def apply(self, conversation: Conversation) -> Conversation:
        """Run the branch engine transition. Raises TreeOperationError, never mutates input."""
        ...

    @abstractmethod
    async def send(self, transport: ChatTransport, conversation_id: str) -> BaseModel:
        ...

    def reconcile(self, conversation: Conversation, response: BaseModel) -> Conversation:
        """Merge the server's answer into the current snapshot. Default: nothing to merge."""
        return conversation

    @staticmethod
    def succeeded(response: BaseModel) -> bool:
        return not isinstance(response, SuccessResponse) or response.success


@dataclass(frozen=True)
class AddMessageCommand(MutationCommand):
    parent_id: str | None
    content: str
    speaker_id: str
    is_bot: bool
    created_at: int
    node_id: str

    @property
    def key(self) -> str:
        return f"add:{self.node_id}"

    def apply(self, conversation: Conversation) -> Conversation:
        return engine.add_message(
            conversation,
            self.parent_id,
            self.content,
            self.speaker_id,
            self.is_bot,
            created_at=self.created_at,
            node_id=self.node_id,
        )

    async def send(self, transport: ChatTransport, conversation_id: str) -> AddMessageResponse:
        return await transport.add_message(
            conversation_id,
            self.parent_id,
            self.content,
            self.speaker_id,
            self.is_bot,
            created_at=self.created_at,
            node_id=self.node_id,
        )

    def reconcile(self, conversation: Conversation, response: BaseModel) -> Conversation:
        """Adopt the confirmed id and timestamp for the optimistic node."""
        if not isinstance(response, AddMessageResponse):
            raise TypeError(f"Expected AddMessageResponse, got {type(response).__name__}")
        node = conversation.nodes.get(self.node_id)
        if node is None:
            # Deleted locally before the confirmation arrived
            return conversation

        if node.created_at != response.created_at:
            nodes = dict(conversation.nodes)
            nodes[node.id] = node.model_copy(update={"created_at": response.created_at})
            conversation = conversation.model_copy(update={"nodes": nodes})

        if response.id != self.node_id:
            conversation = engine.rename_node(conversation, self.node_id, response.id)
        return conversation


@dataclass(frozen=True)
class EditMessageCommand(MutationCommand):
    node_id: str
    content: str
    updated_at: int

    @property
    def key(self) -> str:
        return f"edit:{self.node_id}"

    def apply(self, conversation: Conversation) -> Conversation:
        return engine.edit_message(
            conversation, self.node_id, self.content, updated_at=self.updated_at,
        )

    async def send(self, transport: ChatTransport, conversation_id: str) -> SuccessResponse:
        return await transport.edit_message(conversation_id, self.node_id, self.content)


@dataclass(frozen=True)
class DeleteMessageCommand(MutationCommand):
    node_id: str

    @property
    def key(self) -> str:
        return f"delete:{self.node_id}"

    def apply(self, conversation: Conversation) -> Conversation:
        return engine.delete_message(conversation, self.node_id)

    async def send(self, transport: ChatTransport, conversation_id: str) -> SuccessResponse:
        return await transport.delete_message(conversation_id, self.node_id)


@dataclass(frozen=True)
class SwitchBranchCommand(MutationCommand):
    leaf_id: str

    @property
    def key(self) -> str:
        # All switches compete for the same ancestor pointers
        return "switch-branch"

    def apply(self, conversation: Conversation) -> Conversation:
        return engine.switch_branch(conversation, self.leaf_id)

    async def send(self, transport: ChatTransport, conversation_id: str) -> SuccessResponse:
        return await transport.switch_branch(conversation_id, self.leaf_id)
