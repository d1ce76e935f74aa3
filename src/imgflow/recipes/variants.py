"""Variants recipe — generate N candidates, let a judge pick one, save it.

Graph shape::

    prompts (text) -> fan-out(N) -> gen_0..gen_{N-1} -> collect -> judge (vision)
                                                          |            |
                                                          +--> pick (router) -> [refine] -> save

The text node writes N prompt variations as JSON, the fan-out spreads them
over the generators, and the router forwards the candidate whose index the
judge names in ``winner``. With ``refine_op`` set, the judge's ``refinement``
note becomes the prompt of one last transform.
"""

from typing import Any

from imgflow.core.errors import ValidationError
from imgflow.core.model import WorkflowGraph

DEFAULT_COUNT = 3
DEFAULT_DESTINATION = "./variants/best.png"

PROMPTS_PROMPT = """Write {count} distinct, detailed image-generation prompts for:

{prompt}

Vary composition, lighting and style. Return JSON: {{"prompts": ["...", ...]}}
"""

JUDGE_PROMPT = """You are judging {count} candidate images for this brief:

{prompt}

{criteria}Pick the best one. Return JSON with "winner" (the image number, from 0),
"reason" (one sentence) and "refinement" (one short edit instruction that
would improve the winner)."""

JUDGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "winner": {"type": "integer"},
        "reason": {"type": "string"},
        "refinement": {"type": "string"},
    },
    "required": ["winner"],
}


def _node(node_id: str, kind: str, data: dict[str, Any], x: float, y: float = 0.0) -> dict[str, Any]:
    return {"id": node_id, "type": kind, "position": {"x": x, "y": y}, "data": data}


def _edge(source: str, target: str, *, source_handle: str | None = None, target_handle: str | None = None) -> dict[str, Any]:
    edge_id = f"{source}:{source_handle or 'out'}->{target}:{target_handle or 'in'}"
    edge: dict[str, Any] = {"id": edge_id, "source": source, "target": target}
    if source_handle:
        edge["sourceHandle"] = source_handle
    if target_handle:
        edge["targetHandle"] = target_handle
    return edge


def variants_recipe(
    prompt: str,
    *,
    count: int = DEFAULT_COUNT,
    generator: str = "default",
    generator_params: dict[str, Any] | None = None,
    text_provider: str = "claude",
    judge: str = "claude",
    criteria: str | None = None,
    refine_op: str | None = None,
    refine_provider: str | None = None,
    destination: str = DEFAULT_DESTINATION,
    wait_mode: str = "all",
) -> WorkflowGraph:
    """Build the variants graph for ``prompt``.

    The result is an editor graph; compile it with ``compile_workflow``.
    """
    if count < 1:
        raise ValidationError("count must be at least 1")

    nodes: list[dict[str, Any]] = []
    edges: list[dict[str, Any]] = []

    nodes.append(
        _node(
            "prompts",
            "text",
            {
                "providerName": text_provider,
                "params": {
                    "prompt": PROMPTS_PROMPT.format(count=count, prompt=prompt),
                    "outputFormat": "json",
                },
            },
            x=0,
        )
    )
    nodes.append(_node("variants", "fan-out", {"mode": "array", "count": count, "arrayProperty": "prompts"}, x=200))
    edges.append(_edge("prompts", "variants"))

    gen_ids = [f"gen_{i}" for i in range(count)]
    for i, gen_id in enumerate(gen_ids):
        params = {**(generator_params or {}), "seed": i}
        nodes.append(_node(gen_id, "generator", {"generatorName": generator, "params": params}, x=400, y=i * 150))
        edges.append(_edge("variants", gen_id, source_handle=f"out[{i}]", target_handle="text"))

    collect_data: dict[str, Any] = {"waitMode": wait_mode, "expectedInputs": count}
    nodes.append(_node("candidates", "collect", collect_data, x=600))
    edges.extend(_edge(gen_id, "candidates") for gen_id in gen_ids)

    nodes.append(
        _node(
            "judge",
            "vision",
            {
                "providerName": judge,
                "params": {
                    "prompt": JUDGE_PROMPT.format(
                        count=count,
                        prompt=prompt,
                        criteria=f"Criteria: {criteria}\n\n" if criteria else "",
                    ),
                    "outputFormat": "json",
                    "outputSchema": JUDGE_SCHEMA,
                },
            },
            x=800,
        )
    )
    edges.append(_edge("candidates", "judge", target_handle="image"))

    nodes.append(
        _node(
            "pick",
            "router",
            {"selectionProperty": "winner", "selectionType": "index", "contextProperty": "refinement"},
            x=1000,
        )
    )
    edges.append(_edge("candidates", "pick", target_handle="candidates"))
    edges.append(_edge("judge", "pick", target_handle="selection"))

    last = "pick"
    if refine_op:
        refine_data: dict[str, Any] = {"operation": refine_op, "params": {}}
        if refine_provider:
            refine_data["providerName"] = refine_provider
        nodes.append(_node("refine", "transform", refine_data, x=1200))
        edges.append(_edge("pick", "refine", target_handle="image"))
        edges.append(_edge("pick", "refine", source_handle="context", target_handle="text"))
        last = "refine"

    nodes.append(_node("save", "save", {"destination": destination}, x=1400))
    edges.append(_edge(last, "save"))

    return WorkflowGraph.from_wire({"nodes": nodes, "edges": edges})
