"""Graph compiler — editor graph (nodes + edges) to an ordered Pipeline.

``compile_graph`` is a pure function: no I/O, and the same nodes and edges
always produce the same steps and bindings. Every node binds to its own id as
variable name; input nodes bind but emit no step since their values are
injected before the run starts.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import cast

from imgflow.core.branches import (
    branch_var,
    parse_branch_handle,
    place_branch_inputs,
    plan_branches,
    validate_order,
)
from imgflow.core.errors import (
    BranchWiringError,
    InternalError,
    MissingConnectionError,
    UnknownReferenceError,
)
from imgflow.core.graph import DependencyGraph
from imgflow.core.model import (
    REFERENCES_HANDLE,
    CollectData,
    FanOutData,
    GeneratorData,
    GraphEdge,
    GraphNode,
    RouterData,
    SaveData,
    TextData,
    TransformData,
    VisionData,
    WorkflowGraph,
)
from imgflow.core.steps import (
    CONTEXT_FROM_VAR,
    PROMPT_FROM_PROPERTY,
    PROMPT_FROM_VAR,
    REFERENCE_IMAGE_VARS,
    CollectStep,
    FanOutStep,
    GenerateStep,
    Pipeline,
    RouterStep,
    SaveStep,
    Step,
    TextStep,
    TransformStep,
    VisionStep,
    router_context_var,
)

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_NAME = "Studio Workflow"
DEFAULT_FAN_OUT_COUNT = 3
MAX_FAN_OUT = 16
OUTPUT_PROPERTY_PREFIX = "output."


@dataclass(frozen=True)
class CompileResult:
    pipeline: Pipeline
    bindings: dict[str, str]


class _Wiring:
    """Edge lookups for one graph, with sources resolved to variable names."""

    def __init__(self, graph: WorkflowGraph, bindings: dict[str, str], max_fan_out: int) -> None:
        self.graph = graph
        self.bindings = bindings
        self.max_fan_out = max_fan_out
        self._nodes = {n.id: n for n in graph.nodes}

    def inbound(self, node_id: str) -> list[GraphEdge]:
        return self.graph.edges_to(node_id)

    def edge(self, node_id: str, *handles: str | None) -> GraphEdge | None:
        """First inbound edge whose target handle is one of ``handles``.

        ``None`` in ``handles`` matches the unlabeled default input.
        """
        for e in self.inbound(node_id):
            if (e.target_handle or None) in handles:
                return e
        return None

    def fan_out_count(self, node: GraphNode) -> int:
        data = cast(FanOutData, node.data)
        return max(1, min(data.count or DEFAULT_FAN_OUT_COUNT, self.max_fan_out))

    def source_var(self, edge: GraphEdge) -> str:
        source = self._nodes[edge.source]
        if source.type == "fan-out":
            index = parse_branch_handle(edge.source_handle)
            if index is None:
                raise BranchWiringError(
                    f"Edge {edge.id or edge.source + '->' + edge.target!r} leaves fan-out "
                    f"{source.id!r} without selecting a branch (expected 'out[<i>]')"
                )
            if index >= self.fan_out_count(source):
                raise BranchWiringError(
                    f"Fan-out {source.id!r} has no branch {index} "
                    f"(it has {self.fan_out_count(source)})"
                )
            return branch_var(self.bindings[source.id], index)
        if source.type == "router" and edge.source_handle == "context":
            return router_context_var(self.bindings[source.id])
        if source.type == "save":
            raise UnknownReferenceError(
                f"Save node {source.id!r} produces no output for node {edge.target!r}"
            )
        return self.bindings[source.id]

    def apply_prompt_inputs(self, node: GraphNode, params: dict) -> None:
        """Dynamic prompt (``text`` handle) and reference images (``references``)."""
        text_edge = self.edge(node.id, "text")
        if text_edge is not None:
            params[PROMPT_FROM_VAR] = self.source_var(text_edge)
            handle = text_edge.source_handle or ""
            if handle.startswith(OUTPUT_PROPERTY_PREFIX):
                params[PROMPT_FROM_PROPERTY] = handle[len(OUTPUT_PROPERTY_PREFIX):]

        refs = [self.source_var(e) for e in self.inbound(node.id) if e.target_handle == REFERENCES_HANDLE]
        if refs:
            params[REFERENCE_IMAGE_VARS] = refs


# ---------------------------------------------------------------------------
# Per-kind step builders
# ---------------------------------------------------------------------------


def _build_generator(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(GeneratorData, node.data)
    params = dict(data.params)
    wiring.apply_prompt_inputs(node, params)
    return GenerateStep(generator=data.generator_name, params=params, out=wiring.bindings[node.id])


def _build_transform(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(TransformData, node.data)
    image_edge = wiring.edge(node.id, "image", None)
    if image_edge is None:
        raise MissingConnectionError(f"Transform node {node.id!r} requires an input image connection")
    params = dict(data.params)
    wiring.apply_prompt_inputs(node, params)
    return TransformStep(
        op=data.operation,
        input=wiring.source_var(image_edge),
        params=params,
        out=wiring.bindings[node.id],
        provider=data.provider_name,
    )


def _build_save(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(SaveData, node.data)
    edge = wiring.edge(node.id, None, "image")
    if edge is None:
        raise MissingConnectionError(f"Save node {node.id!r} requires an input connection")
    return SaveStep(
        input=wiring.source_var(edge),
        destination=data.destination,
        provider=data.provider,
        id=node.id,
    )


def _build_vision(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(VisionData, node.data)
    image_edge = wiring.edge(node.id, "image", None)
    if image_edge is None:
        raise MissingConnectionError(f"Vision node {node.id!r} requires an input image connection")
    params = dict(data.params)
    context_edge = wiring.edge(node.id, "context")
    if context_edge is not None:
        params[CONTEXT_FROM_VAR] = wiring.source_var(context_edge)
    return VisionStep(
        provider=data.provider_name,
        input=wiring.source_var(image_edge),
        params=params,
        out=wiring.bindings[node.id],
    )


def _build_text(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(TextData, node.data)
    edge = wiring.edge(node.id, None, "text", "context")
    return TextStep(
        provider=data.provider_name,
        input=wiring.source_var(edge) if edge is not None else None,
        params=dict(data.params),
        out=wiring.bindings[node.id],
    )


def _build_fan_out(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(FanOutData, node.data)
    inbound = wiring.inbound(node.id)
    count = wiring.fan_out_count(node)
    var = wiring.bindings[node.id]
    return FanOutStep(
        input=wiring.source_var(inbound[0]) if inbound else None,
        mode=data.mode,
        count=count,
        array_property=data.array_property,
        out=[branch_var(var, i) for i in range(count)],
        id=node.id,
    )


def _build_collect(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(CollectData, node.data)
    inputs = [wiring.source_var(e) for e in wiring.inbound(node.id)]
    min_required = None
    if data.wait_mode == "available":
        min_required = max(1, data.expected_inputs or 1)
    return CollectStep(
        inputs=inputs,
        wait_mode=data.wait_mode,
        min_required=min_required,
        out=wiring.bindings[node.id],
    )


def _build_router(node: GraphNode, wiring: _Wiring) -> Step:
    data = cast(RouterData, node.data)
    candidates = wiring.edge(node.id, "candidates")
    selection = wiring.edge(node.id, "selection")
    if candidates is None:
        raise MissingConnectionError(f"Router node {node.id!r} requires a 'candidates' connection")
    if selection is None:
        raise MissingConnectionError(f"Router node {node.id!r} requires a 'selection' connection")
    selection_type = "property" if data.selection_type in ("value", "property") else "index"
    return RouterStep(
        input=wiring.source_var(candidates),
        selection_in=wiring.source_var(selection),
        selection_type=selection_type,
        selection_property=data.selection_property,
        context_property=data.context_property,
        out=wiring.bindings[node.id],
    )


_BUILDERS: dict[str, Callable[[GraphNode, _Wiring], Step]] = {
    "generator": _build_generator,
    "transform": _build_transform,
    "save": _build_save,
    "vision": _build_vision,
    "text": _build_text,
    "fan-out": _build_fan_out,
    "collect": _build_collect,
    "router": _build_router,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def _check_structure(graph: WorkflowGraph) -> None:
    errors = graph.structure_errors()
    if errors:
        raise errors[0]


def compile_workflow(
    graph: WorkflowGraph,
    *,
    name: str = DEFAULT_PIPELINE_NAME,
    max_fan_out: int = MAX_FAN_OUT,
) -> CompileResult:
    """Compile a parsed graph. See ``compile_graph``."""
    _check_structure(graph)

    deps = DependencyGraph()
    for node in graph.nodes:
        deps.add_node(node.id)
    for edge in graph.edges:
        deps.add_edge(edge.source, edge.target)

    nodes_by_id = {n.id: n for n in graph.nodes}
    ordered = [nodes_by_id[nid] for nid in deps.order]

    bindings = {node.id: node.id for node in ordered}
    wiring = _Wiring(graph, bindings, max_fan_out)

    steps: list[Step] = []
    for node in ordered:
        if node.type == "input":
            continue
        builder = _BUILDERS.get(node.type)
        if builder is None:
            raise InternalError(f"No step builder for node type {node.type!r}")
        steps.append(builder(node, wiring))

    pipeline = Pipeline(name=name, steps=place_branch_inputs(steps))
    validate_order(pipeline, injected=[bindings[n.id] for n in ordered if n.type == "input"])
    plan_branches(pipeline)

    logger.debug("Compiled %d nodes into %d steps", len(ordered), len(steps))
    return CompileResult(pipeline=pipeline, bindings=bindings)


def compile_graph(
    nodes: Iterable[GraphNode | dict],
    edges: Iterable[GraphEdge | dict],
    *,
    name: str = DEFAULT_PIPELINE_NAME,
    max_fan_out: int = MAX_FAN_OUT,
) -> CompileResult:
    """Compile editor nodes and edges into a Pipeline plus node bindings.

    Raises a ``GraphValidationError`` subclass (category ``validation``) for
    cycles, unknown references, missing required inputs, duplicate
    connections and invalid branch wiring. Nothing is returned in that case.
    """
    graph = WorkflowGraph.model_validate({"nodes": list(nodes), "edges": list(edges)})
    return compile_workflow(graph, name=name, max_fan_out=max_fan_out)
