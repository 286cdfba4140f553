"""Node store construction and invariant checking."""

from collections.abc import Iterable

from branchchat.models import ChatNode, Conversation, Speaker
from branchchat.tree.navigator import (
    CycleDetectedError,
    DanglingReferenceError,
    InvalidActiveIndexError,
    TailMismatchError,
    active_path,
    find_root,
    resolve_leaf_of,
)


def build_conversation(
    conversation_id: str,
    name: str,
    nodes: Iterable[ChatNode],
    speakers: Iterable[Speaker] = (),
    *,
    character_ids: Iterable[str] = (),
    persona_id: str | None = None,
    tags: Iterable[str] = (),
) -> Conversation:
    """Index a flat node list into a Conversation.

    The root is located by its missing parent and the tail by following the
    active path from it, so stored rows never need a cached tail pointer.
    """
    node_map = {node.id: node for node in nodes}
    conversation = Conversation(
        id=conversation_id,
        name=name,
        character_ids=tuple(character_ids),
        persona_id=persona_id,
        tags=tuple(tags),
        nodes=node_map,
        speakers=tuple(speakers),
    )
    if not node_map:
        return conversation

    root = find_root(conversation)
    tail_id = resolve_leaf_of(conversation, root.id)
    return conversation.model_copy(update={"root_id": root.id, "tail_id": tail_id})


def check_invariants(conversation: Conversation) -> None:
    """Raise a TreeStructureError for the first violated tree invariant."""
    if conversation.is_empty:
        if conversation.root_id is not None or conversation.tail_id is not None:
            raise TailMismatchError(None, conversation.tail_id)
        return

    # 1. single root, and it is root_id
    root = find_root(conversation)
    if root.id != conversation.root_id:
        raise DanglingReferenceError(None, str(conversation.root_id))

    for node in conversation.iter_nodes():
        # 2. parent links and child links agree
        if node.parent_id is not None:
            parent = conversation.nodes.get(node.parent_id)
            if parent is None:
                raise DanglingReferenceError(node.id, node.parent_id)
            if parent.child_ids.count(node.id) != 1:
                raise DanglingReferenceError(parent.id, node.id)
        for child_id in node.child_ids:
            child = conversation.nodes.get(child_id)
            if child is None or child.parent_id != node.id:
                raise DanglingReferenceError(node.id, child_id)

        # 3. active index present and in range iff there are children
        if node.child_ids:
            index = node.active_child_index
            if index is None or not 0 <= index < len(node.child_ids):
                raise InvalidActiveIndexError(node.id, index, len(node.child_ids))
        elif node.active_child_index is not None:
            raise InvalidActiveIndexError(node.id, node.active_child_index, 0)

    # 4. the active path ends at tail_id
    path = active_path(conversation)
    if path[-1] != conversation.tail_id:
        raise TailMismatchError(path[-1], conversation.tail_id)

    # No unreachable cycles hiding behind a well-formed active path
    reachable = set(descendants(conversation, root.id))
    if len(reachable) != len(conversation.nodes):
        orphan = next(n.id for n in conversation.iter_nodes() if n.id not in reachable)
        raise CycleDetectedError(orphan)


def descendants(conversation: Conversation, node_id: str) -> list[str]:
    """Ids of the subtree rooted at node_id (node_id first, depth-first)."""
    result: list[str] = []
    seen: set[str] = set()
    stack = [node_id]
    while stack:
        current_id = stack.pop()
        if current_id in seen:
            continue
        seen.add(current_id)
        node = conversation.nodes.get(current_id)
        if node is None:
            continue
        result.append(current_id)
        stack.extend(reversed(node.child_ids))
    return result
