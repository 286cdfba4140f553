"""Branch engine: the mutation algorithms over a Conversation.

Each operation takes a snapshot and returns a new one. The input is never
modified, so a caller holding the old snapshot can restore it verbatim. All
validation happens before the new node mapping is built; a raised
TreeOperationError means nothing changed.
"""

from dataclasses import dataclass, field
from typing import Literal
from uuid import uuid4

from branchchat.models import ChatNode, Conversation
from branchchat.tree.navigator import (
    DanglingReferenceError,
    InvalidBranchTargetError,
    TreeOperationError,
    path_to_root,
    resolve_leaf_of,
    sibling_info,
)
from branchchat.tree.store import descendants
from branchchat.utils.clock import now_ms

Direction = Literal["prev", "next"]

# Placeholder content for a freshly created alternate branch, keyed by whether
# the branched message was written by the user.
DEFAULT_BRANCH_CONTENT: dict[bool, str] = {True: "", False: "..."}


@dataclass(frozen=True)
class BranchDefaults:
    """Parent and authorship of a new sibling branch, sourced from an existing node."""

    parent_id: str
    speaker_id: str
    is_bot: bool
    content: str


@dataclass
class NodeDiff:
    """Node-level delta between two snapshots of the same conversation."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.removed)


def default_branch_content(is_user: bool) -> str:
    return DEFAULT_BRANCH_CONTENT[is_user]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def add_message(
    conversation: Conversation,
    parent_id: str | None,
    content: str,
    speaker_id: str,
    is_bot: bool,
    created_at: int | None = None,
    node_id: str | None = None,
) -> Conversation:
    """Append a new leaf under parent_id and make it the active branch.

    Every ancestor of the new node is re-pointed at it, so the new node is the
    tail even when parent_id was off the active path. parent_id=None is only
    accepted on an empty conversation, where it creates the root.
    """
    node_id = node_id or str(uuid4())
    if node_id in conversation.nodes:
        raise DuplicateNodeError(node_id)

    new_node = ChatNode(
        id=node_id,
        parent_id=parent_id,
        speaker_id=speaker_id,
        message=content,
        is_bot=is_bot,
        created_at=created_at if created_at is not None else now_ms(),
    )

    if parent_id is None:
        if not conversation.is_empty:
            raise InvalidParentError(None)
        return conversation.model_copy(
            update={"nodes": {node_id: new_node}, "root_id": node_id, "tail_id": node_id}
        )

    parent = conversation.nodes.get(parent_id)
    if parent is None:
        raise InvalidParentError(parent_id)

    nodes = dict(conversation.nodes)
    child_ids = (*parent.child_ids, node_id)
    nodes[parent_id] = parent.model_copy(
        update={"child_ids": child_ids, "active_child_index": len(child_ids) - 1}
    )
    nodes[node_id] = new_node

    interim = conversation.model_copy(update={"nodes": nodes})
    _select_chain(nodes, path_to_root(interim, node_id))
    return conversation.model_copy(update={"nodes": nodes, "tail_id": node_id})


def branch_defaults(
    conversation: Conversation, node_id: str, content: str | None = None,
) -> BranchDefaults:
    """Resolve parent, speaker and placeholder content for a sibling of node_id."""
    node = conversation.nodes.get(node_id)
    if node is None:
        raise NodeNotFoundError(node_id)
    if node.parent_id is None:
        raise InvalidBranchTargetError(node_id, "the root has no parent to branch from")

    if content is None:
        speaker = conversation.speaker(node.speaker_id)
        is_user = speaker.is_user if speaker is not None else not node.is_bot
        content = default_branch_content(is_user)

    return BranchDefaults(
        parent_id=node.parent_id,
        speaker_id=node.speaker_id,
        is_bot=node.is_bot,
        content=content,
    )


def create_branch(
    conversation: Conversation,
    node_id: str,
    content: str | None = None,
    created_at: int | None = None,
    new_node_id: str | None = None,
) -> Conversation:
    """Add an alternate sibling of node_id (same parent, same author)."""
    defaults = branch_defaults(conversation, node_id, content)
    return add_message(
        conversation,
        defaults.parent_id,
        defaults.content,
        defaults.speaker_id,
        defaults.is_bot,
        created_at=created_at,
        node_id=new_node_id,
    )


def edit_message(
    conversation: Conversation,
    node_id: str,
    content: str,
    updated_at: int | None = None,
) -> Conversation:
    """Replace a node's text. Tree shape and active path are untouched."""
    node = conversation.nodes.get(node_id)
    if node is None:
        raise NodeNotFoundError(node_id)

    nodes = dict(conversation.nodes)
    nodes[node_id] = node.model_copy(
        update={
            "message": content,
            "updated_at": updated_at if updated_at is not None else now_ms(),
        }
    )
    return conversation.model_copy(update={"nodes": nodes})


def delete_message(conversation: Conversation, node_id: str) -> Conversation:
    """Remove a node together with its whole subtree.

    The parent drops the id from child_ids and keeps pointing at the same live
    child where possible; if the live child was the one removed, the sibling
    now at that index (or the last one) takes over. A parent left without
    children becomes a leaf.
    """
    node = conversation.nodes.get(node_id)
    if node is None:
        raise NodeNotFoundError(node_id)

    removed = set(descendants(conversation, node_id))
    nodes = {k: v for k, v in conversation.nodes.items() if k not in removed}

    if node.parent_id is None:
        return conversation.model_copy(
            update={"nodes": nodes, "root_id": None, "tail_id": None}
        )

    parent = nodes.get(node.parent_id)
    if parent is None or node_id not in parent.child_ids:
        raise DanglingReferenceError(node.parent_id, node_id)
    removed_index = parent.child_ids.index(node_id)
    child_ids = parent.child_ids[:removed_index] + parent.child_ids[removed_index + 1:]
    nodes[parent.id] = parent.model_copy(
        update={
            "child_ids": child_ids,
            "active_child_index": _repoint_active_index(
                parent.active_child_index, removed_index, len(child_ids)
            ),
        }
    )

    interim = conversation.model_copy(update={"nodes": nodes})
    tail_id = resolve_leaf_of(interim, interim.root_id) if interim.root_id else None
    return interim.model_copy(update={"tail_id": tail_id})


def switch_branch(conversation: Conversation, target_id: str) -> Conversation:
    """Make the branch containing target_id the active one.

    Resolves the leaf below target_id, then walks up to the root setting every
    ancestor's active_child_index to the child on that chain. The walk is
    validated first, so an unreachable target changes nothing.
    """
    if target_id not in conversation.nodes:
        raise InvalidBranchTargetError(target_id, "node not found")

    leaf_id = resolve_leaf_of(conversation, target_id)
    chain = path_to_root(conversation, leaf_id)

    nodes = dict(conversation.nodes)
    changed = _select_chain(nodes, chain)
    if not changed and conversation.tail_id == leaf_id:
        return conversation
    return conversation.model_copy(update={"nodes": nodes, "tail_id": leaf_id})


def sibling_target(
    conversation: Conversation, node_id: str, direction: Direction,
) -> str | None:
    """The neighbouring sibling of node_id in the given direction, or None at a boundary."""
    if direction not in ("prev", "next"):
        raise ValueError(f"Unknown branch direction: {direction!r}")
    if node_id not in conversation.nodes:
        raise NodeNotFoundError(node_id)

    info = sibling_info(conversation, node_id)
    new_index = info.index - 1 if direction == "prev" else info.index + 1
    if not 0 <= new_index < info.count:
        return None
    return info.sibling_ids[new_index]


def switch_branch_direction(
    conversation: Conversation, node_id: str, direction: Direction,
) -> Conversation:
    """Step to the previous/next sibling branch. Returns the input unchanged at a boundary."""
    target_id = sibling_target(conversation, node_id, direction)
    if target_id is None:
        return conversation
    return switch_branch(conversation, target_id)


def rename_node(conversation: Conversation, old_id: str, new_id: str) -> Conversation:
    """Replace a node id everywhere it is referenced, keeping node order.

    Used when the server confirms an optimistic node under a different id.
    """
    node = conversation.nodes.get(old_id)
    if node is None:
        raise NodeNotFoundError(old_id)
    if old_id == new_id:
        return conversation
    if new_id in conversation.nodes:
        raise DuplicateNodeError(new_id)

    nodes: dict[str, ChatNode] = {}
    for key, value in conversation.nodes.items():
        if key == old_id:
            nodes[new_id] = value.model_copy(update={"id": new_id})
        elif key == node.parent_id:
            nodes[key] = value.model_copy(
                update={"child_ids": tuple(new_id if c == old_id else c for c in value.child_ids)}
            )
        elif value.parent_id == old_id:
            nodes[key] = value.model_copy(update={"parent_id": new_id})
        else:
            nodes[key] = value

    return conversation.model_copy(
        update={
            "nodes": nodes,
            "root_id": new_id if conversation.root_id == old_id else conversation.root_id,
            "tail_id": new_id if conversation.tail_id == old_id else conversation.tail_id,
        }
    )


def changed_nodes(before: Conversation, after: Conversation) -> NodeDiff:
    """Compute which node ids were added, updated or removed between two snapshots."""
    diff = NodeDiff()
    for node_id, node in after.nodes.items():
        old = before.nodes.get(node_id)
        if old is None:
            diff.added.append(node_id)
        elif old != node:
            diff.updated.append(node_id)
    diff.removed = [node_id for node_id in before.nodes if node_id not in after.nodes]
    return diff


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _select_chain(nodes: dict[str, ChatNode], chain: tuple[str, ...]) -> bool:
    """Point each parent on chain at its successor. Returns True if anything changed."""
    changed = False
    for parent_id, child_id in zip(chain, chain[1:]):
        parent = nodes[parent_id]
        index = parent.child_ids.index(child_id)
        if parent.active_child_index != index:
            nodes[parent_id] = parent.model_copy(update={"active_child_index": index})
            changed = True
    return changed


def _repoint_active_index(
    active_index: int | None, removed_index: int, remaining: int,
) -> int | None:
    if remaining == 0:
        return None
    if active_index is None or removed_index == active_index:
        return min(removed_index, remaining - 1)
    if removed_index < active_index:
        return active_index - 1
    return active_index


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class NodeNotFoundError(TreeOperationError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class InvalidParentError(TreeOperationError):
    def __init__(self, parent_id: str | None) -> None:
        self.parent_id = parent_id
        if parent_id is None:
            super().__init__("Conversation already has a root; a parent is required")
        else:
            super().__init__(f"Invalid parent node: {parent_id}")


class DuplicateNodeError(TreeOperationError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node id already exists: {node_id}")
