"""Compact wire format for conversations.

Speaker ids are long UUIDs repeated on every node, so the wire format carries
them once in a per-conversation dictionary (`speakerIds`) and each node refers
to its speaker by position (`s`). Decoding resolves every index before any
node is built: a malformed payload never yields a partial conversation.
"""

from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from branchchat.models import ChatNode, Conversation, Speaker
from branchchat.tree.navigator import TreeStructureError
from branchchat.tree.store import check_invariants

# -- Wire models --


class WireNode(BaseModel):
    id: str
    parent_id: str | None = None
    child_ids: list[str] = Field(default_factory=list)
    active_child_index: int | None = None
    s: int  # index into WireConversation.speaker_ids
    message: str
    is_bot: bool = False
    created_at: int
    updated_at: int | None = None


class WireConversation(BaseModel):
    """A conversation as transmitted. Top-level keys are camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    character_ids: list[str] = Field(default_factory=list)
    persona_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    speaker_ids: list[str] = Field(default_factory=list, alias="speakerIds")
    speakers: list[Speaker] = Field(default_factory=list)
    nodes: list[WireNode] = Field(default_factory=list)
    root_id: str | None = Field(default=None, alias="rootId")
    tail_id: str | None = Field(default=None, alias="tailId")

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict with wire key names."""
        return self.model_dump(mode="json", by_alias=True)


# -- Codec --


def encode_conversation(
    conversation: Conversation, extra_speakers: Iterable[Speaker] = (),
) -> WireConversation:
    """Dictionary-encode speaker ids.

    `speakerIds` lists the distinct speakers referenced by nodes in first-use
    order, followed by any other known speakers (conversation speakers, then
    extra_speakers). `speakers` is emitted in the same order; ids without a
    known record get an "Unknown" placeholder.
    """
    speaker_ids: list[str] = []
    positions: dict[str, int] = {}

    def intern(speaker_id: str) -> int:
        if speaker_id not in positions:
            positions[speaker_id] = len(speaker_ids)
            speaker_ids.append(speaker_id)
        return positions[speaker_id]

    wire_nodes = [
        WireNode(
            id=node.id,
            parent_id=node.parent_id,
            child_ids=list(node.child_ids),
            active_child_index=node.active_child_index,
            s=intern(node.speaker_id),
            message=node.message,
            is_bot=node.is_bot,
            created_at=node.created_at,
            updated_at=node.updated_at,
        )
        for node in conversation.iter_nodes()
    ]

    known: dict[str, Speaker] = {}
    for speaker in (*conversation.speakers, *extra_speakers):
        known.setdefault(speaker.id, speaker)
        intern(speaker.id)

    speakers = [
        known.get(speaker_id) or Speaker(id=speaker_id, name="Unknown")
        for speaker_id in speaker_ids
    ]

    return WireConversation(
        id=conversation.id,
        name=conversation.name,
        character_ids=list(conversation.character_ids),
        persona_id=conversation.persona_id,
        tags=list(conversation.tags),
        speaker_ids=speaker_ids,
        speakers=speakers,
        nodes=wire_nodes,
        root_id=conversation.root_id,
        tail_id=conversation.tail_id,
    )


def decode_conversation(payload: WireConversation | dict[str, Any]) -> Conversation:
    """Hydrate a wire payload into a Conversation and check its invariants.

    Raises MalformedPayloadError for schema violations and bad speaker
    indices, and a TreeStructureError if the decoded tree is inconsistent.
    """
    if isinstance(payload, WireConversation):
        wire = payload
    else:
        try:
            wire = WireConversation.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayloadError(f"invalid conversation payload: {e}") from e

    dictionary_size = len(wire.speaker_ids)
    for wire_node in wire.nodes:
        if not 0 <= wire_node.s < dictionary_size:
            raise MalformedPayloadError(
                f"node {wire_node.id} has speaker index {wire_node.s}, "
                f"but only {dictionary_size} speaker ids were sent"
            )

    nodes: dict[str, ChatNode] = {}
    for wire_node in wire.nodes:
        if wire_node.id in nodes:
            raise MalformedPayloadError(f"duplicate node id: {wire_node.id}")
        nodes[wire_node.id] = ChatNode(
            id=wire_node.id,
            parent_id=wire_node.parent_id,
            child_ids=tuple(wire_node.child_ids),
            active_child_index=wire_node.active_child_index,
            speaker_id=wire.speaker_ids[wire_node.s],
            message=wire_node.message,
            is_bot=wire_node.is_bot,
            created_at=wire_node.created_at,
            updated_at=wire_node.updated_at,
        )

    conversation = Conversation(
        id=wire.id,
        name=wire.name,
        character_ids=tuple(wire.character_ids),
        persona_id=wire.persona_id,
        tags=tuple(wire.tags),
        nodes=nodes,
        speakers=tuple(wire.speakers),
        root_id=wire.root_id,
        tail_id=wire.tail_id,
    )
    check_invariants(conversation)
    return conversation


class MalformedPayloadError(TreeStructureError):
    pass
