"""Conversation tree: navigation, invariants and branch mutations."""

from branchchat.tree import engine, navigator
from branchchat.tree.navigator import TreeOperationError, TreeStructureError
from branchchat.tree.store import build_conversation, check_invariants

__all__ = [
    "TreeOperationError",
    "TreeStructureError",
    "build_conversation",
    "check_invariants",
    "engine",
    "navigator",
]
