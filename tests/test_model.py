"""Tests for the editor graph model and its structural checks."""

import pytest

from imgflow.core.compiler import compile_workflow
from imgflow.core.errors import DuplicateConnectionError, GraphValidationError, UnknownReferenceError
from imgflow.core.model import GeneratorData, WorkflowGraph


def _graph(nodes, edges=()) -> WorkflowGraph:
    return WorkflowGraph.from_wire({"nodes": list(nodes), "edges": list(edges)})


def _gen(node_id):
    return {"id": node_id, "type": "generator", "data": {"generatorName": "quickchart"}}


class TestStructureErrors:
    def test_clean_graph(self):
        graph = _graph([_gen("g")])
        assert graph.structure_errors() == []
        assert graph.validate_structure() == []

    def test_duplicate_node(self):
        [error] = _graph([_gen("g"), _gen("g")]).structure_errors()
        assert isinstance(error, GraphValidationError)
        assert error.code == "DUPLICATE_NODE"

    def test_unknown_endpoints(self):
        errors = _graph([_gen("g")], [{"source": "ghost", "target": "g"}]).structure_errors()
        assert [type(e) for e in errors] == [UnknownReferenceError]
        assert "ghost" in errors[0].message

    def test_duplicate_connection(self):
        nodes = [_gen("a"), _gen("b"), {"id": "t", "type": "transform", "data": {"operation": "blur"}}]
        edges = [{"source": "a", "target": "t"}, {"source": "b", "target": "t"}]
        [error] = _graph(nodes, edges).structure_errors()
        assert isinstance(error, DuplicateConnectionError)
        assert error.code == "DUPLICATE_CONNECTION"

    def test_multi_valued_inputs(self):
        nodes = [_gen("a"), _gen("b"), _gen("c"), {"id": "all", "type": "collect", "data": {}}]
        edges = [
            {"source": "a", "target": "all"},
            {"source": "b", "target": "all"},
            {"source": "a", "target": "c", "targetHandle": "references"},
            {"source": "b", "target": "c", "targetHandle": "references"},
        ]
        assert _graph(nodes, edges).validate_structure() == []

    def test_messages_match_errors(self):
        graph = _graph([_gen("g"), _gen("g")], [{"source": "g", "target": "x"}])
        assert graph.validate_structure() == [e.message for e in graph.structure_errors()]
        assert len(graph.validate_structure()) == 2

    def test_compiler_raises_first_structure_error(self):
        graph = _graph([_gen("g"), _gen("g")], [{"source": "g", "target": "x"}])
        with pytest.raises(GraphValidationError) as exc_info:
            compile_workflow(graph)
        assert exc_info.value.message == graph.validate_structure()[0]


class TestNodeData:
    def test_data_model_chosen_by_type(self):
        graph = _graph([_gen("g")])
        assert isinstance(graph.nodes[0].data, GeneratorData)
        assert graph.node_by_id("g").data.generator_name == "quickchart"

    def test_wire_round_trip_uses_aliases(self):
        wire = _graph([_gen("g")]).to_wire()
        assert wire["nodes"][0]["data"]["generatorName"] == "quickchart"
