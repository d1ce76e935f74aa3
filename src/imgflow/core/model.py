"""Graph model for editor workflows.

Mirrors the wire format produced by the visual editor (and by the
natural-language graph generator):

    {
      "nodes": [
        {"id": "gen", "type": "generator", "position": {"x": 0, "y": 0},
         "data": {"generatorName": "quickchart", "params": {"type": "bar"}}},
        {"id": "small", "type": "transform",
         "data": {"operation": "resize", "params": {"width": 64}}},
        {"id": "out", "type": "save", "data": {"destination": "./out.png"}}
      ],
      "edges": [
        {"id": "e1", "source": "gen", "target": "small"},
        {"id": "e2", "source": "small", "target": "out"}
      ]
    }

Node ``data`` is a tagged union keyed by the node's ``type``: every kind has
its own payload model and no fields are shared between kinds.
"""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from imgflow.core.errors import DuplicateConnectionError, GraphValidationError, UnknownReferenceError

NodeKind = Literal[
    "generator",
    "transform",
    "save",
    "input",
    "vision",
    "text",
    "fan-out",
    "collect",
    "router",
]

# The editor spells fan-out without the dash.
NODE_KIND_ALIASES: dict[str, str] = {"fanout": "fan-out"}

REFERENCES_HANDLE = "references"

_DATA_CONFIG = ConfigDict(populate_by_name=True, extra="allow")


class GeneratorData(BaseModel):
    model_config = _DATA_CONFIG

    generator_name: str = Field(..., alias="generatorName")
    params: dict[str, Any] = Field(default_factory=dict)
    is_ai: bool = Field(default=False, alias="isAI")
    accepts_reference_images: bool = Field(default=False, alias="acceptsReferenceImages")
    max_reference_images: int | None = Field(default=None, alias="maxReferenceImages")


class TransformData(BaseModel):
    model_config = _DATA_CONFIG

    operation: str
    provider_name: str | None = Field(default=None, alias="providerName")
    params: dict[str, Any] = Field(default_factory=dict)
    is_ai: bool = Field(default=False, alias="isAI")
    accepts_reference_images: bool = Field(default=False, alias="acceptsReferenceImages")
    max_reference_images: int | None = Field(default=None, alias="maxReferenceImages")


class SaveData(BaseModel):
    model_config = _DATA_CONFIG

    destination: str
    provider: str | None = None


class InputData(BaseModel):
    model_config = _DATA_CONFIG

    upload_id: str | None = Field(default=None, alias="uploadId")
    filename: str | None = None
    mime: str | None = None


class VisionData(BaseModel):
    model_config = _DATA_CONFIG

    provider_name: str = Field(..., alias="providerName")
    provider_label: str | None = Field(default=None, alias="providerLabel")
    params: dict[str, Any] = Field(default_factory=dict)
    output_schema: dict[str, Any] | None = Field(default=None, alias="outputSchema")


class TextData(BaseModel):
    model_config = _DATA_CONFIG

    provider_name: str = Field(..., alias="providerName")
    provider_label: str | None = Field(default=None, alias="providerLabel")
    params: dict[str, Any] = Field(default_factory=dict)
    output_schema: dict[str, Any] | None = Field(default=None, alias="outputSchema")


class FanOutData(BaseModel):
    """Spawn parallel branches: N copies of the input, or one per array item."""

    model_config = _DATA_CONFIG

    mode: Literal["count", "array"] = "count"
    count: int | None = None
    array_property: str | None = Field(default=None, alias="arrayProperty")


class CollectData(BaseModel):
    """Gather branch outputs into one ordered array."""

    model_config = _DATA_CONFIG

    expected_inputs: int | None = Field(default=None, alias="expectedInputs")
    wait_mode: Literal["all", "available"] = Field(default="all", alias="waitMode")


class RouterData(BaseModel):
    """Route the candidate picked by a judgment (usually a vision node)."""

    model_config = _DATA_CONFIG

    selection_property: str = Field(default="winner", alias="selectionProperty")
    selection_type: Literal["index", "value", "property"] = Field(
        default="index", alias="selectionType"
    )
    output_count: int = Field(default=1, alias="outputCount")
    context_property: str | None = Field(default=None, alias="contextProperty")


NodeData = Union[
    GeneratorData,
    TransformData,
    SaveData,
    InputData,
    VisionData,
    TextData,
    FanOutData,
    CollectData,
    RouterData,
]

DATA_MODELS: dict[str, type[BaseModel]] = {
    "generator": GeneratorData,
    "transform": TransformData,
    "save": SaveData,
    "input": InputData,
    "vision": VisionData,
    "text": TextData,
    "fan-out": FanOutData,
    "collect": CollectData,
    "router": RouterData,
}


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class GraphNode(BaseModel):
    """A node in the editor graph. ``id`` doubles as its variable name."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: NodeKind
    position: Position = Field(default_factory=Position)
    data: NodeData

    @model_validator(mode="before")
    @classmethod
    def _parse_data(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        kind = value.get("type")
        kind = NODE_KIND_ALIASES.get(kind, kind)
        model = DATA_MODELS.get(kind)
        if model is None:
            raise ValueError(f"Unknown node type: {value.get('type')!r}")
        data = value.get("data")
        if not isinstance(data, model):
            data = model.model_validate(data or {})
        return {**value, "type": kind, "data": data}

    @property
    def kind(self) -> str:
        return self.type


class GraphEdge(BaseModel):
    """A connection from a node's output handle to another node's input slot."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


class WorkflowGraph(BaseModel):
    """Root graph: nodes plus the edges between them."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> WorkflowGraph:
        return cls.model_validate(data)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def node_by_id(self, node_id: str) -> GraphNode | None:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def edges_to(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self.edges if e.target == node_id]

    def edges_from(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self.edges if e.source == node_id]

    def structure_errors(self) -> list[GraphValidationError]:
        """Typed structural problems, in node then edge order.

        Checks:
        - No duplicate node IDs
        - All edge references point to existing nodes
        - At most one edge per (target, targetHandle), except ``references``
          and the unlabeled input of a collect node, which are multi-valued
        """
        errors: list[GraphValidationError] = []

        seen: set[str] = set()
        kinds: dict[str, str] = {}
        for n in self.nodes:
            if n.id in seen:
                errors.append(GraphValidationError(f"Duplicate node ID: '{n.id}'", code="DUPLICATE_NODE"))
            seen.add(n.id)
            kinds[n.id] = n.type

        for edge in self.edges:
            if edge.source not in seen:
                errors.append(UnknownReferenceError(f"Edge references non-existent source node: '{edge.source}'"))
            if edge.target not in seen:
                errors.append(UnknownReferenceError(f"Edge references non-existent target node: '{edge.target}'"))

        occupied: set[tuple[str, str | None]] = set()
        for edge in self.edges:
            handle = edge.target_handle or None
            if handle == REFERENCES_HANDLE:
                continue
            if handle is None and kinds.get(edge.target) == "collect":
                continue
            slot = (edge.target, handle)
            if slot in occupied:
                errors.append(
                    DuplicateConnectionError(
                        f"Multiple edges feed input '{handle or 'default'}' of node '{edge.target}'"
                    )
                )
            occupied.add(slot)

        return errors

    def validate_structure(self) -> list[str]:
        """Validate the graph structure and return a list of error messages."""
        return [e.message for e in self.structure_errors()]
