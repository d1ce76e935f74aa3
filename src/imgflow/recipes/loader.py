"""Loader — read graphs, pipelines and input images from disk.

Graph and pipeline files may be JSON or YAML (YAML is a superset, so both go
through ``yaml.safe_load``). A document with a ``steps`` list is a pipeline;
one with ``nodes`` is an editor graph.
"""

from pathlib import Path
from typing import Any

import pydantic
import yaml

from imgflow.core.artifacts import ImageArtifact, image_from_bytes
from imgflow.core.errors import ValidationError
from imgflow.core.model import WorkflowGraph
from imgflow.core.steps import Pipeline


def read_document(path: str | Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(Path(path).read_text())
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}", cause=e) from e
    except yaml.YAMLError as e:
        raise ValidationError(f"{path} is not valid JSON or YAML: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping at the top level")
    return data


def parse_graph(data: dict[str, Any]) -> WorkflowGraph:
    try:
        return WorkflowGraph.from_wire(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid workflow graph: {e}", cause=e) from e


def parse_pipeline(data: dict[str, Any]) -> Pipeline:
    try:
        return Pipeline.from_wire(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid pipeline: {e}", cause=e) from e


def load_graph(path: str | Path) -> WorkflowGraph:
    return parse_graph(read_document(path))


def load_pipeline(path: str | Path) -> Pipeline:
    return parse_pipeline(read_document(path))


def load_workflow(path: str | Path) -> WorkflowGraph | Pipeline:
    """Load either kind of document, deciding by its top-level keys."""
    data = read_document(path)
    if "steps" in data:
        return parse_pipeline(data)
    if "nodes" in data:
        return parse_graph(data)
    raise ValidationError(f"{path} has neither 'nodes' (graph) nor 'steps' (pipeline)")


def load_inputs(pairs: list[str]) -> dict[str, ImageArtifact]:
    """Read ``var=path`` pairs into images keyed by variable name."""
    inputs: dict[str, ImageArtifact] = {}
    for pair in pairs:
        var, sep, path = pair.partition("=")
        if not sep or not var or not path:
            raise ValidationError(f"Expected VAR=PATH, got {pair!r}")
        if var in inputs:
            raise ValidationError(f"Input {var!r} given more than once")
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise ValidationError(f"Cannot read input image {path}: {e}", cause=e) from e
        inputs[var] = image_from_bytes(data, source=var)
    return inputs
