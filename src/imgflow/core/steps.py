"""Compiled pipeline steps and the Pipeline artifact.

A ``Pipeline`` is the portable output of the compiler and the only thing the
scheduler consumes. It serializes to the canonical wire format
``{"name": ..., "steps": [{"kind": "generate", ...}, ...]}`` and can be
exported to YAML, stored, and replayed.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

# Side-channel parameters: variable references carried inside ``params``.
PROMPT_FROM_VAR = "_promptFromVar"
PROMPT_FROM_PROPERTY = "_promptFromProperty"
REFERENCE_IMAGE_VARS = "_referenceImageVars"
CONTEXT_FROM_VAR = "_contextFromVar"

SIDE_CHANNEL_PARAMS = (PROMPT_FROM_VAR, PROMPT_FROM_PROPERTY, REFERENCE_IMAGE_VARS, CONTEXT_FROM_VAR)

_STEP_CONFIG = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")


def router_context_var(out: str) -> str:
    """Variable holding a router's pass-through context."""
    return f"{out}_context"


def _param_reads(params: dict[str, Any]) -> list[str]:
    reads: list[str] = []
    prompt_var = params.get(PROMPT_FROM_VAR)
    if isinstance(prompt_var, str) and prompt_var:
        reads.append(prompt_var)
    for ref in params.get(REFERENCE_IMAGE_VARS) or []:
        reads.append(ref)
    context_var = params.get(CONTEXT_FROM_VAR)
    if isinstance(context_var, str) and context_var:
        reads.append(context_var)
    return reads


class GenerateStep(BaseModel):
    model_config = _STEP_CONFIG

    kind: Literal["generate"] = "generate"
    generator: str
    params: dict[str, Any] = Field(default_factory=dict)
    out: str

    def reads(self) -> list[str]:
        return _param_reads(self.params)

    def writes(self) -> list[str]:
        return [self.out]

    @property
    def step_id(self) -> str:
        return self.out


class TransformStep(BaseModel):
    model_config = _STEP_CONFIG

    kind: Literal["transform"] = "transform"
    op: str
    input: str = Field(..., alias="in")
    params: dict[str, Any] = Field(default_factory=dict)
    out: str
    provider: str | None = None

    def reads(self) -> list[str]:
        return [self.input, *_param_reads(self.params)]

    def writes(self) -> list[str]:
        return [self.out]

    @property
    def step_id(self) -> str:
        return self.out


class SaveStep(BaseModel):
    """Persist an image. Produces no variable."""

    model_config = _STEP_CONFIG

    kind: Literal["save"] = "save"
    input: str = Field(..., alias="in")
    destination: str
    provider: str | None = None
    id: str | None = None

    def reads(self) -> list[str]:
        return [self.input]

    def writes(self) -> list[str]:
        return []

    @property
    def step_id(self) -> str:
        return self.id or f"save_{self.input}"


class VisionStep(BaseModel):
    model_config = _STEP_CONFIG

    kind: Literal["vision"] = "vision"
    provider: str
    input: str = Field(..., alias="in")
    params: dict[str, Any] = Field(default_factory=dict)
    out: str

    def reads(self) -> list[str]:
        return [self.input, *_param_reads(self.params)]

    def writes(self) -> list[str]:
        return [self.out]

    @property
    def step_id(self) -> str:
        return self.out


class TextStep(BaseModel):
    model_config = _STEP_CONFIG

    kind: Literal["text"] = "text"
    provider: str
    input: str | None = Field(default=None, alias="in")
    params: dict[str, Any] = Field(default_factory=dict)
    out: str

    def reads(self) -> list[str]:
        reads = [self.input] if self.input else []
        return reads + _param_reads(self.params)

    def writes(self) -> list[str]:
        return [self.out]

    @property
    def step_id(self) -> str:
        return self.out


class FanOutStep(BaseModel):
    model_config = _STEP_CONFIG

    kind: Literal["fan-out"] = "fan-out"
    input: str | None = Field(default=None, alias="in")
    mode: Literal["count", "array"] = "count"
    count: int | None = None
    array_property: str | None = Field(default=None, alias="arrayProperty")
    out: list[str]
    id: str | None = None

    def reads(self) -> list[str]:
        return [self.input] if self.input else []

    def writes(self) -> list[str]:
        return list(self.out)

    @property
    def step_id(self) -> str:
        if self.id:
            return self.id
        return self.out[0].rsplit("_", 1)[0] if self.out else "fan-out"


class CollectStep(BaseModel):
    model_config = _STEP_CONFIG

    kind: Literal["collect"] = "collect"
    inputs: list[str] = Field(..., alias="in")
    wait_mode: Literal["all", "available"] = Field(default="all", alias="waitMode")
    min_required: int | None = Field(default=None, alias="minRequired")
    out: str

    def reads(self) -> list[str]:
        return list(self.inputs)

    def writes(self) -> list[str]:
        return [self.out]

    @property
    def step_id(self) -> str:
        return self.out


class RouterStep(BaseModel):
    model_config = _STEP_CONFIG

    kind: Literal["router"] = "router"
    input: str = Field(..., alias="in")
    selection_in: str = Field(..., alias="selectionIn")
    selection_type: Literal["index", "property"] = Field(default="index", alias="selectionType")
    selection_property: str = Field(default="winner", alias="selectionProperty")
    context_property: str | None = Field(default=None, alias="contextProperty")
    out: str

    def reads(self) -> list[str]:
        return [self.input, self.selection_in]

    def writes(self) -> list[str]:
        if self.context_property:
            return [self.out, router_context_var(self.out)]
        return [self.out]

    @property
    def step_id(self) -> str:
        return self.out


Step = Annotated[
    Union[
        GenerateStep,
        TransformStep,
        SaveStep,
        VisionStep,
        TextStep,
        FanOutStep,
        CollectStep,
        RouterStep,
    ],
    Field(discriminator="kind"),
]


class Pipeline(BaseModel):
    """Ordered, immutable list of compiled steps."""

    model_config = ConfigDict(frozen=True)

    name: str = "Studio Workflow"
    steps: list[Step] = Field(default_factory=list)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Pipeline:
        return cls.model_validate(data)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_wire(), indent=indent)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_wire(), sort_keys=False)

    def step_ids(self) -> list[str]:
        return [step.step_id for step in self.steps]

    def __len__(self) -> int:
        return len(self.steps)
