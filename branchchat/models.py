"""Canonical data structures for branchchat.

Defined once here, referenced everywhere else. A Conversation is an immutable
snapshot: nodes live in a flat id -> node mapping and refer to each other by id.
Mutations never edit a snapshot in place; the branch engine builds a new one.
"""

from collections.abc import Iterator

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


class Speaker(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    avatar_url: str | None = None
    color: str | None = None
    is_user: bool = False


# ---------------------------------------------------------------------------
# Tree structure
# ---------------------------------------------------------------------------


class ChatNode(BaseModel):
    """One message. `active_child_index` is None exactly when the node is a leaf."""

    model_config = ConfigDict(frozen=True)

    id: str
    parent_id: str | None = None
    child_ids: tuple[str, ...] = ()
    active_child_index: int | None = None

    speaker_id: str
    message: str
    is_bot: bool = False

    created_at: int  # epoch milliseconds
    updated_at: int | None = None

    @property
    def is_leaf(self) -> bool:
        return not self.child_ids

    @property
    def active_child_id(self) -> str | None:
        if self.active_child_index is None or not self.child_ids:
            return None
        return self.child_ids[self.active_child_index]


class Conversation(BaseModel):
    """One chat: the full node set plus the cached root and tail pointers."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    character_ids: tuple[str, ...] = ()
    persona_id: str | None = None
    tags: tuple[str, ...] = ()

    nodes: dict[str, ChatNode] = Field(default_factory=dict)
    speakers: tuple[Speaker, ...] = ()

    root_id: str | None = None
    tail_id: str | None = None

    def node(self, node_id: str) -> ChatNode | None:
        return self.nodes.get(node_id)

    def speaker(self, speaker_id: str) -> Speaker | None:
        return next((s for s in self.speakers if s.id == speaker_id), None)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def iter_nodes(self) -> Iterator[ChatNode]:
        return iter(self.nodes.values())

    @property
    def is_empty(self) -> bool:
        return not self.nodes


class ChatMeta(BaseModel):
    """Chat metadata without nodes, as listed by the persistence collaborator."""

    id: str
    name: str
    character_ids: list[str] = Field(default_factory=list)
    persona_id: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: int
    updated_at: int
