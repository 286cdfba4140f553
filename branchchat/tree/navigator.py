"""Read-only navigation over a Conversation snapshot.

Every function here is pure: it inspects the node mapping and never builds a
new snapshot. Structural violations (missing root, dangling ids, cycles) raise
TreeStructureError subclasses instead of guessing.
"""

from dataclasses import dataclass

from branchchat.models import ChatNode, Conversation


@dataclass(frozen=True)
class SiblingInfo:
    """Position of a node among its parent's children ("branch 2 of 3")."""

    parent_id: str | None
    sibling_ids: tuple[str, ...]
    index: int

    @property
    def count(self) -> int:
        return len(self.sibling_ids)

    @property
    def has_prev(self) -> bool:
        return self.index > 0

    @property
    def has_next(self) -> bool:
        return self.index < self.count - 1

    @property
    def label(self) -> str:
        return f"{self.index + 1}/{self.count}"


def find_root(conversation: Conversation) -> ChatNode:
    """Return the unique node without a parent.

    Raises NoRootFoundError or MultipleRootsFoundError when the node set
    violates the single-root invariant.
    """
    roots = [n for n in conversation.iter_nodes() if n.parent_id is None]
    if not roots:
        raise NoRootFoundError(conversation.id)
    if len(roots) > 1:
        raise MultipleRootsFoundError(conversation.id, [n.id for n in roots])
    return roots[0]


def active_child_of(conversation: Conversation, node: ChatNode) -> ChatNode | None:
    """Follow one step of the active path. None at a leaf."""
    if not node.child_ids:
        return None
    index = node.active_child_index
    if index is None or not 0 <= index < len(node.child_ids):
        raise InvalidActiveIndexError(node.id, index, len(node.child_ids))
    child_id = node.child_ids[index]
    child = conversation.nodes.get(child_id)
    if child is None:
        raise DanglingReferenceError(node.id, child_id)
    return child


def resolve_leaf_of(conversation: Conversation, node_id: str) -> str:
    """Follow active_child_index downward from node_id to a leaf."""
    node = conversation.nodes.get(node_id)
    if node is None:
        raise DanglingReferenceError(None, node_id)

    visited: set[str] = {node.id}
    while (child := active_child_of(conversation, node)) is not None:
        if child.id in visited:
            raise CycleDetectedError(child.id)
        visited.add(child.id)
        node = child
    return node.id


def active_path(conversation: Conversation) -> tuple[str, ...]:
    """Ids from the root to the current leaf, selected by active_child_index.

    Empty conversations have an empty path. Terminates on any input: a cycle
    raises CycleDetectedError.
    """
    if conversation.root_id is None:
        return ()
    node = conversation.nodes.get(conversation.root_id)
    if node is None:
        raise DanglingReferenceError(None, conversation.root_id)

    path: list[str] = [node.id]
    visited: set[str] = {node.id}
    while (child := active_child_of(conversation, node)) is not None:
        if child.id in visited:
            raise CycleDetectedError(child.id)
        visited.add(child.id)
        path.append(child.id)
        node = child
    return tuple(path)


def active_nodes(conversation: Conversation) -> list[ChatNode]:
    """The ChatNodes of the active path, root first."""
    return [conversation.nodes[node_id] for node_id in active_path(conversation)]


def sibling_info(conversation: Conversation, node_id: str) -> SiblingInfo:
    """Return the parent, the full sibling list and node_id's position in it.

    The root is treated as sibling 0 of 1.
    """
    node = conversation.nodes.get(node_id)
    if node is None:
        raise DanglingReferenceError(None, node_id)
    if node.parent_id is None:
        return SiblingInfo(parent_id=None, sibling_ids=(node.id,), index=0)

    parent = conversation.nodes.get(node.parent_id)
    if parent is None:
        raise DanglingReferenceError(node.id, node.parent_id)
    try:
        index = parent.child_ids.index(node.id)
    except ValueError:
        raise DanglingReferenceError(parent.id, node.id) from None
    return SiblingInfo(parent_id=parent.id, sibling_ids=parent.child_ids, index=index)


def path_to_root(conversation: Conversation, node_id: str) -> tuple[str, ...]:
    """Walk parent links from node_id up to the root; return ids root first.

    Raises InvalidBranchTargetError if the chain is broken, cyclic, or ends
    somewhere other than the conversation's root.
    """
    chain: list[str] = []
    visited: set[str] = set()
    current_id: str | None = node_id

    while current_id is not None:
        if current_id in visited:
            raise InvalidBranchTargetError(node_id, f"cycle at {current_id}")
        visited.add(current_id)
        node = conversation.nodes.get(current_id)
        if node is None:
            raise InvalidBranchTargetError(node_id, f"broken chain at {current_id}")
        if node.parent_id is not None:
            parent = conversation.nodes.get(node.parent_id)
            if parent is None or node.id not in parent.child_ids:
                raise InvalidBranchTargetError(
                    node_id, f"{node.id} is not a child of {node.parent_id}"
                )
        chain.append(node.id)
        current_id = node.parent_id

    if chain[-1] != conversation.root_id:
        raise InvalidBranchTargetError(node_id, "not reachable from root")
    chain.reverse()
    return tuple(chain)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TreeStructureError(Exception):
    """The snapshot itself is corrupt. Never retried."""


class NoRootFoundError(TreeStructureError):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"No root node in conversation: {conversation_id}")


class MultipleRootsFoundError(TreeStructureError):
    def __init__(self, conversation_id: str, root_ids: list[str]) -> None:
        self.conversation_id = conversation_id
        self.root_ids = root_ids
        super().__init__(
            f"Multiple root nodes in conversation {conversation_id}: {root_ids}"
        )


class DanglingReferenceError(TreeStructureError):
    def __init__(self, from_id: str | None, missing_id: str) -> None:
        self.from_id = from_id
        self.missing_id = missing_id
        source = f" (referenced from {from_id})" if from_id else ""
        super().__init__(f"Dangling node reference: {missing_id}{source}")


class InvalidActiveIndexError(TreeStructureError):
    def __init__(self, node_id: str, index: int | None, child_count: int) -> None:
        self.node_id = node_id
        self.index = index
        self.child_count = child_count
        super().__init__(
            f"Node {node_id} has active_child_index={index} with {child_count} children"
        )


class CycleDetectedError(TreeStructureError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Cycle detected at node: {node_id}")


class TailMismatchError(TreeStructureError):
    def __init__(self, expected: str | None, actual: str | None) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"tail_id is {actual} but the active path ends at {expected}")


class TreeOperationError(Exception):
    """A requested mutation cannot be applied. Nothing was changed."""


class InvalidBranchTargetError(TreeOperationError):
    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Invalid branch target {node_id}: {reason}")
