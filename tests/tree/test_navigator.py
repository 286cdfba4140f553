"""Tests for read-only tree navigation: active path, siblings, leaf resolution."""

import pytest

from branchchat.models import Conversation
from branchchat.tree.navigator import (
    CycleDetectedError,
    DanglingReferenceError,
    InvalidActiveIndexError,
    InvalidBranchTargetError,
    MultipleRootsFoundError,
    NoRootFoundError,
    active_nodes,
    active_path,
    find_root,
    path_to_root,
    resolve_leaf_of,
    sibling_info,
)
from tests.fixtures import make_empty, make_linear, make_node, make_tree


def branching() -> Conversation:
    """R -> [A, B]; A -> [A1]; B -> [B1, B2]. B and B2 active."""
    return make_tree({"R": ["A", "B"], "A": ["A1"], "B": ["B1", "B2"]})


class TestFindRoot:
    def test_finds_single_root(self):
        assert find_root(branching()).id == "R"

    def test_no_root(self):
        conv = Conversation(
            id="c", name="c",
            nodes={"x": make_node("x", parent_id="y"), "y": make_node("y", parent_id="x")},
        )
        with pytest.raises(NoRootFoundError):
            find_root(conv)

    def test_multiple_roots(self):
        conv = Conversation(id="c", name="c", nodes={"a": make_node("a"), "b": make_node("b")})
        with pytest.raises(MultipleRootsFoundError) as exc_info:
            find_root(conv)
        assert set(exc_info.value.root_ids) == {"a", "b"}


class TestActivePath:
    def test_linear_path(self):
        assert active_path(make_linear(4)) == ("m0", "m1", "m2", "m3")

    def test_follows_active_indices(self):
        assert active_path(branching()) == ("R", "B", "B2")

    def test_respects_non_default_index(self):
        conv = make_tree({"R": ["A", "B"], "A": ["A1"]}, active={"R": 0})
        assert active_path(conv) == ("R", "A", "A1")

    def test_empty_conversation(self):
        assert active_path(make_empty()) == ()

    def test_single_node(self):
        conv = make_tree({"R": []})
        assert active_path(conv) == ("R",)

    def test_ends_at_tail(self):
        conv = branching()
        assert active_path(conv)[-1] == conv.tail_id

    def test_active_nodes_match_path(self):
        conv = branching()
        assert [n.id for n in active_nodes(conv)] == list(active_path(conv))

    def test_out_of_range_index_raises(self):
        conv = branching()
        nodes = dict(conv.nodes)
        nodes["B"] = nodes["B"].model_copy(update={"active_child_index": 5})
        with pytest.raises(InvalidActiveIndexError) as exc_info:
            active_path(conv.model_copy(update={"nodes": nodes}))
        assert exc_info.value.node_id == "B"

    def test_dangling_child_raises(self):
        conv = branching()
        nodes = dict(conv.nodes)
        del nodes["B2"]
        with pytest.raises(DanglingReferenceError):
            active_path(conv.model_copy(update={"nodes": nodes}))

    def test_cycle_terminates_with_error(self):
        """A child pointing back at an ancestor must not loop forever."""
        conv = make_linear(3)
        nodes = dict(conv.nodes)
        nodes["m2"] = nodes["m2"].model_copy(update={"child_ids": ("m0",), "active_child_index": 0})
        with pytest.raises(CycleDetectedError):
            active_path(conv.model_copy(update={"nodes": nodes}))


class TestSiblingInfo:
    def test_middle_of_three(self):
        conv = make_tree({"R": ["A", "B", "C"]})
        info = sibling_info(conv, "B")
        assert info.parent_id == "R"
        assert info.sibling_ids == ("A", "B", "C")
        assert info.index == 1
        assert info.count == 3
        assert info.has_prev and info.has_next
        assert info.label == "2/3"

    def test_first_and_last(self):
        conv = make_tree({"R": ["A", "B"]})
        assert not sibling_info(conv, "A").has_prev
        assert not sibling_info(conv, "B").has_next

    def test_only_child(self):
        info = sibling_info(make_linear(2), "m1")
        assert info.count == 1
        assert info.label == "1/1"

    def test_root_is_zero_of_one(self):
        info = sibling_info(branching(), "R")
        assert info.parent_id is None
        assert info.index == 0
        assert info.count == 1

    def test_unknown_node(self):
        with pytest.raises(DanglingReferenceError):
            sibling_info(branching(), "nope")


class TestResolveLeafOf:
    def test_leaf_resolves_to_itself(self):
        assert resolve_leaf_of(branching(), "A1") == "A1"

    def test_follows_active_children(self):
        assert resolve_leaf_of(branching(), "B") == "B2"

    def test_inactive_branch_uses_its_own_indices(self):
        """A's subtree is not on the active path, but A still has an active child."""
        assert resolve_leaf_of(branching(), "A") == "A1"

    def test_from_root_is_tail(self):
        conv = branching()
        assert resolve_leaf_of(conv, "R") == conv.tail_id


class TestPathToRoot:
    def test_root_first(self):
        assert path_to_root(branching(), "B1") == ("R", "B", "B1")

    def test_root_alone(self):
        assert path_to_root(branching(), "R") == ("R",)

    def test_unknown_node(self):
        with pytest.raises(InvalidBranchTargetError):
            path_to_root(branching(), "nope")

    def test_parent_not_listing_child(self):
        conv = branching()
        nodes = dict(conv.nodes)
        nodes["B"] = nodes["B"].model_copy(update={"child_ids": ("B2",), "active_child_index": 0})
        with pytest.raises(InvalidBranchTargetError):
            path_to_root(conv.model_copy(update={"nodes": nodes}), "B1")
