"""Scheduler — run a compiled Pipeline with concurrent fan-out branches."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from imgflow.core.artifacts import DataResult, MemoryArtifactStore, SaveResult
from imgflow.core.branches import BranchRegion, plan_branches, validate_order
from imgflow.core.errors import ExecutionError, FlowError, wrap_error
from imgflow.core.events import EventChannel, RunCompleted, RunError, RunStarted, StepEvent
from imgflow.core.executor import StepExecutor
from imgflow.core.moderation import ModerationGate
from imgflow.core.registry import CapabilityRegistry
from imgflow.core.steps import CollectStep, FanOutStep, Pipeline, Step
from imgflow.core.store import VariableStore

logger = logging.getLogger(__name__)

DEFAULT_COLLECT_TIMEOUT = 30.0


class StepStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class StepOutcome:
    step_id: str
    status: StepStatus
    error: FlowError | None = None
    artifact_id: str | None = None
    branch_id: str | None = None
    branch_index: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    status: str = "completed"
    steps: dict[str, StepOutcome] = field(default_factory=dict)
    artifact_ids: list[str] = field(default_factory=list)
    data_outputs: dict[str, DataResult] = field(default_factory=dict)
    saved: list[SaveResult] = field(default_factory=list)
    error: FlowError | None = None
    duration_ms: float = 0.0
    variables: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == "completed"

    @property
    def failed_steps(self) -> list[str]:
        return [sid for sid, o in self.steps.items() if o.status == StepStatus.ERROR]

    def summary(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for o in self.steps.values():
            by_status[o.status.value] = by_status.get(o.status.value, 0) + 1
        return {
            "status": self.status,
            "total": len(self.steps),
            "by_status": by_status,
            "artifacts": len(self.artifact_ids),
            "saved": [s.location for s in self.saved],
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class _BranchInfo:
    region: BranchRegion
    index: int

    @property
    def event_fields(self) -> dict[str, Any]:
        return {
            "branch_id": self.region.branch_id(self.index),
            "branch_index": self.index,
            "total_branches": len(self.region),
        }


@dataclass
class _RegionRun:
    region: BranchRegion
    scopes: list[VariableStore]
    tasks: list[asyncio.Task] = field(default_factory=list)
    failed: set[int] = field(default_factory=set)
    joined: bool = False


def _error_payload(error: FlowError) -> dict[str, Any]:
    return {
        "message": error.message,
        "code": error.code,
        "category": error.category.value,
        "retryable": error.retryable,
    }


class _PipelineRun:
    """State of one ``Scheduler.run`` call."""

    def __init__(
        self,
        scheduler: "Scheduler",
        pipeline: Pipeline,
        regions: list[BranchRegion],
        scope: VariableStore,
        channel: EventChannel,
    ) -> None:
        self.scheduler = scheduler
        self.pipeline = pipeline
        self.steps = pipeline.steps
        self.scope = scope
        self.channel = channel
        self.result = ExecutionResult()
        self.regions: dict[int, _RegionRun] = {}
        self._region_by_fan_out = {r.fan_out_index: r for r in regions}
        self._collect_region = {idx: r.fan_out_index for r in regions for idx in r.collect_indices}
        self._branch_members = {idx for r in regions for idx in r.member_indices}

    # -- single steps -----------------------------------------------------

    def _emit_step(self, step_id: str, status: StepStatus, branch: _BranchInfo | None = None, **extra: Any) -> None:
        fields = branch.event_fields if branch else {}
        self.channel.emit(StepEvent(step_id=step_id, status=status.value, **fields, **extra))

    def _outcome(self, step: Step, status: StepStatus, branch: _BranchInfo | None = None, **kwargs: Any) -> StepOutcome:
        outcome = StepOutcome(
            step_id=step.step_id,
            status=status,
            branch_id=branch.region.branch_id(branch.index) if branch else None,
            branch_index=branch.index if branch else None,
            **kwargs,
        )
        self.result.steps[step.step_id] = outcome
        return outcome

    async def run_step(self, step: Step, scope: VariableStore, branch: _BranchInfo | None = None) -> None:
        """Execute, moderate, store and write back one step. Raises on failure."""
        logger.info("Running %s", step.step_id)
        self._outcome(step, StepStatus.RUNNING, branch)
        self._emit_step(step.step_id, StepStatus.RUNNING, branch)

        output = await self.scheduler.executor.execute(step, scope)

        artifact_id = None
        if output.image is not None:
            moderation = await self.scheduler.moderation.check(output.image, step.step_id)
            artifact_id = self.scheduler.artifact_store.put(output.image, step_id=step.step_id, moderation=moderation)
            self.result.artifact_ids.append(artifact_id)

        for var, value in output.values.items():
            scope.set(var, value)
        if output.data is not None:
            self.result.data_outputs[step.step_id] = output.data
        if output.saved is not None:
            self.result.saved.append(output.saved)

        self._outcome(step, StepStatus.COMPLETED, branch, artifact_id=artifact_id, metadata=output.metadata)
        self._emit_step(
            step.step_id,
            StepStatus.COMPLETED,
            branch,
            artifact_ref=artifact_id,
            text_payload=output.data.content if output.data is not None else None,
        )
        logger.info("Finished %s", step.step_id)

    def _fail(self, step: Step, error: FlowError, branch: _BranchInfo | None = None) -> None:
        self._outcome(step, StepStatus.ERROR, branch, error=error)
        self._emit_step(step.step_id, StepStatus.ERROR, branch, error=_error_payload(error))

    def _branch_of_step(self, idx: int) -> _BranchInfo | None:
        for region in self._region_by_fan_out.values():
            for b, members in enumerate(region.branches):
                if idx in members:
                    return _BranchInfo(region, b)
        return None

    def _skip(self, indices: list[int], branch: _BranchInfo | None = None, reason: str = "") -> None:
        for idx in indices:
            step = self.steps[idx]
            existing = self.result.steps.get(step.step_id)
            if existing is not None and existing.status is not StepStatus.RUNNING:
                continue
            info = branch or self._branch_of_step(idx)
            self._outcome(step, StepStatus.SKIPPED, info, metadata={"reason": reason} if reason else {})
            self._emit_step(step.step_id, StepStatus.SKIPPED, info, skip_reason=reason or None)

    # -- branches ---------------------------------------------------------

    async def _run_branch(self, run: _RegionRun, b: int) -> None:
        branch = _BranchInfo(run.region, b)
        members = list(run.region.branches[b])
        scope = run.scopes[b]
        for pos, idx in enumerate(members):
            step = self.steps[idx]
            try:
                await self.run_step(step, scope, branch)
            except asyncio.CancelledError:
                self._skip(members[pos:], branch, "cancelled")
                raise
            except Exception as e:
                error = wrap_error(e, step_id=step.step_id)
                logger.warning("Branch %s failed at %s: %s", branch.region.branch_id(b), step.step_id, error.message)
                self._fail(step, error, branch)
                self._skip(members[pos + 1:], branch, "branch failed")
                run.failed.add(b)
                return

    async def start_region(self, fan_out: FanOutStep, index: int) -> None:
        region = self._region_by_fan_out[index]
        self._outcome(fan_out, StepStatus.RUNNING)
        self._emit_step(fan_out.step_id, StepStatus.RUNNING)
        values = self.scheduler.executor.fan_out_values(fan_out, self.scope)

        run = _RegionRun(
            region=region,
            scopes=[self.scope.child({var: value}) for var, value in zip(region.branch_vars, values)],
        )
        self.regions[index] = run
        self._outcome(fan_out, StepStatus.COMPLETED, metadata={"branches": len(region)})
        self._emit_step(fan_out.step_id, StepStatus.COMPLETED)

        logger.info("Fan-out %s: starting %d branches", fan_out.step_id, len(region))
        run.tasks = [asyncio.create_task(self._run_branch(run, b)) for b in range(len(region))]

    async def join_region(self, run: _RegionRun, wait_mode: str = "all") -> None:
        if run.joined:
            return
        running = [t for t in run.tasks if not t.done()]
        if running and wait_mode == "available":
            _, pending = await asyncio.wait(running, timeout=self.scheduler.collect_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    "Collect timeout for %s: cancelling %d branches", run.region.fan_out_id, len(pending)
                )
                await asyncio.gather(*pending, return_exceptions=True)
            for b, task in enumerate(run.tasks):
                if task.cancelled():
                    run.failed.add(b)
        elif running:
            await asyncio.gather(*running)
        run.joined = True

    def branch_value(self, var: str) -> Any:
        """Value of ``var`` as seen after its region was joined."""
        for run in self.regions.values():
            b = run.region.branch_of_var(var)
            if b is None:
                continue
            if b in run.failed:
                return None
            return run.scopes[b].local_items().get(var)
        return self.scope.get(var)

    async def run_collect(self, step: CollectStep, index: int) -> None:
        self._outcome(step, StepStatus.RUNNING)
        self._emit_step(step.step_id, StepStatus.RUNNING)
        region_index = self._collect_region.get(index)
        if region_index is not None:
            await self.join_region(self.regions[region_index], step.wait_mode)

        collected = [self.branch_value(var) for var in step.inputs]
        present = sum(1 for v in collected if v is not None)
        if step.wait_mode == "available" and step.min_required and present < step.min_required:
            raise ExecutionError(
                f"Collect step requires at least {step.min_required} inputs, but only {present} available",
                step_id=step.step_id,
            )
        self.scope.set(step.out, collected)
        logger.info("Collect %s: gathered %d/%d inputs", step.step_id, present, len(collected))
        self._outcome(step, StepStatus.COMPLETED, metadata={"inputCount": len(collected), "validCount": present})
        self._emit_step(step.step_id, StepStatus.COMPLETED)

    async def cancel_branches(self) -> None:
        tasks = [t for run in self.regions.values() for t in run.tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- whole pipeline ---------------------------------------------------

    async def execute(self) -> None:
        for idx, step in enumerate(self.steps):
            if idx in self._branch_members:
                continue
            try:
                if isinstance(step, FanOutStep):
                    await self.start_region(step, idx)
                elif isinstance(step, CollectStep):
                    await self.run_collect(step, idx)
                else:
                    await self.run_step(step, self.scope)
            except Exception as e:
                error = wrap_error(e, step_id=step.step_id)
                await self._halt(step, error)
                return

        # Regions without a collect still finish before the run completes.
        for run in self.regions.values():
            await self.join_region(run)

    async def _halt(self, step: Step, error: FlowError) -> None:
        logger.error("Step %s failed: %s", step.step_id, error.message)
        await self.cancel_branches()
        self._fail(step, error)
        self._skip(list(range(len(self.steps))), reason="run halted")
        self.result.status = "error"
        self.result.error = error
        self.channel.emit(
            RunError(
                message=error.message,
                category=error.category.value,
                code=error.code,
                retryable=error.retryable,
                step_id=step.step_id,
            )
        )


class Scheduler:
    """Execute pipelines step by step, fan-out branches concurrently.

    Steps outside fan-out regions run strictly in compiled order. At a
    fan-out every branch starts as its own task in a child scope and the
    scheduler moves on; a collect waits for its region, merges branch
    values in branch order and writes them to the parent scope. A failing
    branch only ends that branch; a failing top-level step halts the run.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        moderation: ModerationGate | None = None,
        artifact_store: Any = None,
        collect_timeout: float = DEFAULT_COLLECT_TIMEOUT,
        dry_run: bool = False,
    ) -> None:
        self.registry = registry
        self.executor = StepExecutor(registry)
        self.moderation = moderation or ModerationGate(None, enabled=False)
        self.artifact_store = artifact_store if artifact_store is not None else MemoryArtifactStore()
        self.collect_timeout = collect_timeout
        self.dry_run = dry_run

    async def run(
        self,
        pipeline: Pipeline,
        initial_variables: dict[str, Any] | None = None,
        channel: EventChannel | None = None,
    ) -> ExecutionResult:
        """Run ``pipeline`` and return its result.

        Validation problems raise before anything runs. Runtime failures are
        reported in the result (and as events), not raised.
        """
        initial_variables = initial_variables or {}
        validate_order(pipeline, injected=initial_variables.keys())
        regions = plan_branches(pipeline)

        channel = channel if channel is not None else EventChannel()
        scope = VariableStore(initial_variables)
        run = _PipelineRun(self, pipeline, regions, scope, channel)
        start = time.monotonic()

        channel.emit(RunStarted(total_steps=len(pipeline), step_ids=pipeline.step_ids()))
        logger.info("Pipeline %r: %d steps, %d fan-out regions", pipeline.name, len(pipeline), len(regions))

        if self.dry_run:
            for step in pipeline.steps:
                run.result.steps[step.step_id] = StepOutcome(
                    step_id=step.step_id, status=StepStatus.SKIPPED, metadata={"dry_run": True}
                )
        else:
            try:
                await run.execute()
            finally:
                await run.cancel_branches()

        result = run.result
        result.duration_ms = round((time.monotonic() - start) * 1000, 1)
        result.variables = scope.snapshot()
        if result.success:
            channel.emit(RunCompleted(artifact_ids=list(result.artifact_ids)))
        channel.close()
        logger.info("Pipeline %r finished: %s in %.1fms", pipeline.name, result.status, result.duration_ms)
        return result
