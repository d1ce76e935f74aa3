"""StepExecutor — run one compiled step against a variable scope.

The executor resolves a step's inputs, dispatches the matching capability
and returns a ``StepOutput``. It never writes to the scope: deciding what is
written, and when, belongs to the scheduler (moderation runs in between).
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from imgflow.core.artifacts import DataResult, ImageArtifact, SaveResult
from imgflow.core.errors import ErrorCategory, ExecutionError, InternalError, wrap_error
from imgflow.core.registry import CapabilityRegistry
from imgflow.core.steps import (
    CONTEXT_FROM_VAR,
    PROMPT_FROM_PROPERTY,
    PROMPT_FROM_VAR,
    REFERENCE_IMAGE_VARS,
    SIDE_CHANNEL_PARAMS,
    CollectStep,
    FanOutStep,
    GenerateStep,
    RouterStep,
    SaveStep,
    Step,
    TextStep,
    TransformStep,
    VisionStep,
    router_context_var,
)
from imgflow.core.store import VariableStore

logger = logging.getLogger(__name__)


@dataclass
class StepOutput:
    """What a step produced.

    ``values`` maps variable names to the values the step writes; ``image``,
    ``data`` and ``saved`` expose the typed primary result for bookkeeping.
    """

    step_id: str
    values: dict[str, Any] = field(default_factory=dict)
    image: ImageArtifact | None = None
    data: DataResult | None = None
    saved: SaveResult | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def prompt_text(value: Any, prop: str | None, step_id: str) -> str:
    """Text of a dynamic prompt source, optionally one property of it."""
    if prop:
        parsed = value.parsed if isinstance(value, DataResult) else value
        if not isinstance(parsed, dict) or prop not in parsed:
            raise ExecutionError(f"Prompt source has no property {prop!r}", step_id=step_id)
        found = parsed[prop]
        return found if isinstance(found, str) else json.dumps(found)
    if isinstance(value, DataResult):
        return value.content
    if isinstance(value, str):
        return value
    if value is None:
        raise ExecutionError("Prompt source is empty", step_id=step_id)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def context_value(value: Any) -> Any:
    if isinstance(value, DataResult):
        return value.parsed if value.type == "json" and value.parsed is not None else value.content
    return value


def property_of(candidate: Any, name: str) -> Any:
    if isinstance(candidate, DataResult):
        return candidate.get_property(name)
    if isinstance(candidate, ImageArtifact):
        return candidate.metadata.get(name)
    if isinstance(candidate, dict):
        return candidate.get(name)
    return None


def _branch_item(item: Any) -> Any:
    if isinstance(item, (ImageArtifact, DataResult)):
        return item
    if isinstance(item, str):
        return DataResult(type="text", content=item, source="fan-out")
    parsed = item if isinstance(item, dict) else {"value": item}
    return DataResult(type="json", content=json.dumps(item), parsed=parsed, source="fan-out")


class StepExecutor:
    """Dispatch compiled steps to the capabilities in a ``CapabilityRegistry``."""

    def __init__(self, registry: CapabilityRegistry) -> None:
        self.registry = registry
        self._handlers = {
            "generate": self._generate,
            "transform": self._transform,
            "save": self._save,
            "vision": self._vision,
            "text": self._text,
            "fan-out": self._fan_out,
            "collect": self._collect,
            "router": self._router,
        }

    async def execute(self, step: Step, scope: VariableStore) -> StepOutput:
        """Run ``step`` with timing metadata.

        Resolution problems raise ``ExecutionError``; capability failures are
        normalized through ``wrap_error``.
        """
        handler = self._handlers.get(step.kind)
        if handler is None:
            raise InternalError(f"Unknown step kind: {step.kind!r}", step_id=step.step_id)
        start = time.monotonic()
        output = await handler(step, scope)
        output.metadata.setdefault("duration_ms", round((time.monotonic() - start) * 1000, 1))
        return output

    # -- input resolution -------------------------------------------------

    def resolve_params(self, step: Step, scope: VariableStore) -> dict[str, Any]:
        """Copy ``params`` with side-channel references replaced by values.

        ``_promptFromVar`` becomes ``prompt``, ``_referenceImageVars`` becomes
        ``referenceImages`` and ``_contextFromVar`` becomes ``context``.
        """
        raw: dict[str, Any] = getattr(step, "params", {})
        params = {k: v for k, v in raw.items() if k not in SIDE_CHANNEL_PARAMS}

        prompt_var = raw.get(PROMPT_FROM_VAR)
        if prompt_var:
            value = scope.require(prompt_var, step.step_id)
            params["prompt"] = prompt_text(value, raw.get(PROMPT_FROM_PROPERTY), step.step_id)

        ref_vars = raw.get(REFERENCE_IMAGE_VARS)
        if ref_vars:
            refs: list[ImageArtifact] = []
            for var in ref_vars:
                value = scope.require(var, step.step_id)
                items = value if isinstance(value, list) else [value]
                refs.extend(item for item in items if isinstance(item, ImageArtifact))
            params["referenceImages"] = refs

        context_var = raw.get(CONTEXT_FROM_VAR)
        if context_var:
            params["context"] = context_value(scope.require(context_var, step.step_id))

        return params

    def _image_input(self, step: Step, var: str, scope: VariableStore) -> ImageArtifact:
        value = scope.require(var, step.step_id)
        if not isinstance(value, ImageArtifact):
            raise ExecutionError(
                f"Step {step.step_id!r} expects an image in {var!r}, got {type(value).__name__}",
                step_id=step.step_id,
            )
        return value

    async def _dispatch(self, step: Step, provider: str | None, call: Any) -> Any:
        try:
            return await call
        except Exception as e:
            wrapped = wrap_error(
                e,
                code="PROVIDER_ERROR",
                category=ErrorCategory.PROVIDER_ERROR,
                provider=provider,
                operation=step.kind,
                step_id=step.step_id,
            )
            if wrapped is e:
                raise
            raise wrapped from e

    # -- handlers ---------------------------------------------------------

    async def _generate(self, step: GenerateStep, scope: VariableStore) -> StepOutput:
        params = self.resolve_params(step, scope)
        image = await self._dispatch(step, step.generator, self.registry.generate(step.generator, params))
        image = self._expect_image(step, image)
        return StepOutput(step.step_id, values={step.out: image}, image=image)

    async def _transform(self, step: TransformStep, scope: VariableStore) -> StepOutput:
        source = self._image_input(step, step.input, scope)
        params = self.resolve_params(step, scope)
        image = await self._dispatch(
            step, step.provider, self.registry.transform(step.op, step.provider, source, params)
        )
        image = self._expect_image(step, image)
        return StepOutput(step.step_id, values={step.out: image}, image=image)

    async def _save(self, step: SaveStep, scope: VariableStore) -> StepOutput:
        source = self._image_input(step, step.input, scope)
        saved = await self._dispatch(
            step, step.provider, self.registry.save(source, step.destination, step.provider)
        )
        return StepOutput(step.step_id, saved=saved)

    async def _vision(self, step: VisionStep, scope: VariableStore) -> StepOutput:
        # A collected list goes through unchanged so result indices line up
        # with the router's candidates.
        source = scope.require(step.input, step.step_id)
        if not isinstance(source, (ImageArtifact, list)):
            raise ExecutionError(
                f"Vision step {step.step_id!r} expects an image or a collected list in {step.input!r}",
                step_id=step.step_id,
            )
        params = self.resolve_params(step, scope)
        result = await self._dispatch(step, step.provider, self.registry.analyze(step.provider, source, params))
        data = self._expect_data(step, result)
        return StepOutput(step.step_id, values={step.out: data}, data=data)

    async def _text(self, step: TextStep, scope: VariableStore) -> StepOutput:
        source = scope.require(step.input, step.step_id) if step.input else None
        params = self.resolve_params(step, scope)
        if isinstance(source, DataResult) and "context" not in params:
            params["context"] = source.content
        result = await self._dispatch(
            step, step.provider, self.registry.text_generate(step.provider, source, params)
        )
        data = self._expect_data(step, result)
        return StepOutput(step.step_id, values={step.out: data}, data=data)

    async def _fan_out(self, step: FanOutStep, scope: VariableStore) -> StepOutput:
        values = self.fan_out_values(step, scope)
        return StepOutput(step.step_id, values=dict(zip(step.out, values)))

    async def _collect(self, step: CollectStep, scope: VariableStore) -> StepOutput:
        return StepOutput(step.step_id, values={step.out: self.collect_values(step, scope)})

    async def _router(self, step: RouterStep, scope: VariableStore) -> StepOutput:
        winner, context = self.route(step, scope)
        values = {step.out: winner}
        if step.context_property:
            values[router_context_var(step.out)] = context
        return StepOutput(step.step_id, values=values)

    # -- flow control -----------------------------------------------------

    def fan_out_values(self, step: FanOutStep, scope: VariableStore) -> list[Any]:
        """One value per branch, in branch order.

        Count mode copies the input (``None`` when unconnected). Array mode
        spreads ``parsed[arrayProperty]`` (or a list input) over the branches;
        branches past the end of the array get ``None``.
        """
        n = len(step.out)
        if step.mode == "count":
            value = scope.require(step.input, step.step_id) if step.input else None
            return [value] * n

        if not step.input:
            raise ExecutionError(f"Fan-out {step.step_id!r} in array mode needs an input", step_id=step.step_id)
        value = scope.require(step.input, step.step_id)
        if isinstance(value, DataResult) and step.array_property:
            items = value.get_property(step.array_property)
            if not isinstance(items, list):
                raise ExecutionError(
                    f"Fan-out array property {step.array_property!r} is not an array",
                    step_id=step.step_id,
                )
        elif isinstance(value, list):
            items = value
        else:
            raise ExecutionError(
                "Fan-out in array mode requires a list input or a JSON result with arrayProperty",
                step_id=step.step_id,
            )
        if len(items) > n:
            logger.debug("Fan-out %s: %d items for %d branches, extra items dropped", step.step_id, len(items), n)
        return [_branch_item(items[i]) if i < len(items) else None for i in range(n)]

    def collect_values(self, step: CollectStep, scope: VariableStore) -> list[Any]:
        """Ordered array of the collect's inputs, ``None`` where absent."""
        return [scope.get(var) for var in step.inputs]

    def route(self, step: RouterStep, scope: VariableStore) -> tuple[Any, Any]:
        """Pick the winning candidate; returns ``(winner, context)``."""
        candidates = scope.require(step.input, step.step_id)
        selection = scope.require(step.selection_in, step.step_id)
        if not isinstance(candidates, list):
            raise ExecutionError(f"Router input {step.input!r} must be a collected array", step_id=step.step_id)

        parsed = selection.parsed if isinstance(selection, DataResult) else selection
        if not isinstance(parsed, dict) or step.selection_property not in parsed:
            raise ExecutionError(
                f"Router selection must be JSON containing {step.selection_property!r}",
                step_id=step.step_id,
            )
        chosen = parsed[step.selection_property]

        if step.selection_type == "index":
            try:
                index = int(chosen)
            except (TypeError, ValueError):
                raise ExecutionError(f"Router index {chosen!r} is not a number", step_id=step.step_id) from None
            if index < 0 or index >= len(candidates):
                raise ExecutionError(
                    f"Router index {index} out of bounds (0-{len(candidates) - 1})",
                    step_id=step.step_id,
                )
            winner = candidates[index]
        else:
            winner = next(
                (c for c in candidates if c is not None and property_of(c, step.selection_property) == chosen),
                None,
            )
            if winner is None:
                raise ExecutionError(
                    f"Router could not find candidate with {step.selection_property}={chosen!r}",
                    step_id=step.step_id,
                )

        if winner is None:
            raise ExecutionError("Router selected an empty candidate", step_id=step.step_id)

        context = parsed.get(step.context_property) if step.context_property else None
        logger.debug("Router %s selected %r", step.step_id, winner)
        return winner, context

    # -- result checks ----------------------------------------------------

    def _expect_image(self, step: Step, value: Any) -> ImageArtifact:
        if not isinstance(value, ImageArtifact):
            raise ExecutionError(
                f"Step {step.step_id!r} expected an image result, got {type(value).__name__}",
                step_id=step.step_id,
            )
        if value.source is None:
            value.source = step.step_id
        return value

    def _expect_data(self, step: Step, value: Any) -> DataResult:
        if isinstance(value, DataResult):
            data = value
        elif isinstance(value, (str, dict, list)):
            data = DataResult.from_value(value)
        else:
            raise ExecutionError(
                f"Step {step.step_id!r} expected a text or JSON result, got {type(value).__name__}",
                step_id=step.step_id,
            )
        if data.source is None:
            data.source = step.step_id
        return data
