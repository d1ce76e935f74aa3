"""Tests for DependencyGraph."""

import pytest

from imgflow.core.errors import CycleError, ErrorCategory, UnknownReferenceError
from imgflow.core.graph import DependencyGraph


def _graph(*node_ids: str) -> DependencyGraph:
    g = DependencyGraph()
    for nid in node_ids:
        g.add_node(nid)
    return g


class TestGraphAddNode:
    def test_add_single_node(self):
        g = _graph("a")
        assert len(g) == 1
        assert g.node_ids == ["a"]

    def test_add_multiple_nodes(self):
        g = DependencyGraph()
        g.add_node("a").add_node("b")
        assert len(g) == 2

    def test_re_adding_keeps_position(self):
        g = _graph("a", "b")
        g.add_node("a")
        assert g.node_ids == ["a", "b"]


class TestGraphAddEdge:
    def test_add_edge(self):
        g = _graph("a", "b")
        g.add_edge("a", "b")
        assert "a" in g.predecessors("b")
        assert "b" in g.successors("a")

    def test_edge_unknown_source_raises(self):
        g = _graph("b")
        with pytest.raises(UnknownReferenceError, match="source node: 'missing'"):
            g.add_edge("missing", "b")

    def test_edge_unknown_target_raises(self):
        g = _graph("a")
        with pytest.raises(UnknownReferenceError, match="target node: 'missing'"):
            g.add_edge("a", "missing")

    def test_chaining(self):
        g = _graph("a", "b")
        result = g.add_edge("a", "b")
        assert result is g


class TestGraphLevels:
    def test_single_node(self):
        assert _graph("a").levels == [["a"]]

    def test_no_edges_single_level(self):
        levels = _graph("a", "b", "c").levels
        assert levels == [["a", "b", "c"]]

    def test_linear_chain(self):
        g = _graph("a", "b", "c")
        g.add_edge("a", "b").add_edge("b", "c")
        assert g.levels == [["a"], ["b"], ["c"]]

    def test_diamond_graph(self):
        g = _graph("a", "b", "c", "d")
        g.add_edge("a", "b").add_edge("a", "c")
        g.add_edge("b", "d").add_edge("c", "d")
        assert g.levels == [["a"], ["b", "c"], ["d"]]

    def test_ready_set_keeps_insertion_order(self):
        g = _graph("z", "y", "x")
        assert g.order == ["z", "y", "x"]

    def test_dependency_overrides_insertion_order(self):
        g = _graph("save", "gen")
        g.add_edge("gen", "save")
        assert g.order == ["gen", "save"]

    def test_empty_graph(self):
        assert DependencyGraph().levels == []


class TestGraphCycles:
    def test_cycle_raises(self):
        g = _graph("a", "b")
        g.add_edge("a", "b").add_edge("b", "a")
        with pytest.raises(CycleError):
            _ = g.levels

    def test_three_node_cycle_is_named(self):
        g = _graph("a", "b", "c")
        g.add_edge("a", "b").add_edge("b", "c").add_edge("c", "a")
        with pytest.raises(CycleError) as exc_info:
            _ = g.order
        assert set(exc_info.value.cycle) == {"a", "b", "c"}
        assert exc_info.value.code == "CYCLE_DETECTED"
        assert exc_info.value.category == ErrorCategory.VALIDATION

    def test_blocked_nodes_are_reported(self):
        g = _graph("start", "a", "b", "after")
        g.add_edge("start", "a").add_edge("a", "b").add_edge("b", "a").add_edge("b", "after")
        with pytest.raises(CycleError) as exc_info:
            _ = g.levels
        assert set(exc_info.value.cycle) == {"a", "b"}
        assert exc_info.value.blocked == ["after"]
        assert "after" in str(exc_info.value)
