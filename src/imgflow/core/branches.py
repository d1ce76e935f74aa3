"""Branch planning for fan-out / collect regions.

A fan-out step with N outputs opens a region of N branches. Branch ``i``
contains every later step that reads branch ``i``'s variable, directly or
through an earlier member of the same branch. Branch-local variables may only
leave their branch through a collect step, so branches can run concurrently
in isolated scopes and merge only at the collect.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass

from imgflow.core.errors import BranchWiringError, GraphValidationError, UnknownReferenceError
from imgflow.core.steps import CollectStep, FanOutStep, Pipeline, RouterStep, Step

_BRANCH_HANDLE_RE = re.compile(r"^out\[(\d+)\]$")


def branch_var(node_id: str, index: int) -> str:
    """Variable name of branch ``index`` of fan-out ``node_id``."""
    return f"{node_id}_{index}"


def parse_branch_handle(handle: str | None) -> int | None:
    """Return the branch index of an ``out[<i>]`` handle, else ``None``."""
    if not handle:
        return None
    match = _BRANCH_HANDLE_RE.match(handle)
    return int(match.group(1)) if match else None


@dataclass(frozen=True)
class BranchRegion:
    """Static layout of one fan-out region, by step index."""

    fan_out_index: int
    fan_out_id: str
    branch_vars: tuple[str, ...]
    branches: tuple[tuple[int, ...], ...]
    local_vars: tuple[frozenset[str], ...]
    collect_indices: tuple[int, ...]

    @property
    def member_indices(self) -> set[int]:
        return {idx for branch in self.branches for idx in branch}

    def branch_of_var(self, var: str) -> int | None:
        for b, local in enumerate(self.local_vars):
            if var in local:
                return b
        return None

    def branch_id(self, branch_index: int) -> str:
        return f"{self.fan_out_id}_branch_{branch_index}"

    def __len__(self) -> int:
        return len(self.branch_vars)


def _validate_flow_steps(pipeline: Pipeline) -> None:
    for step in pipeline.steps:
        if isinstance(step, CollectStep) and not step.inputs:
            raise BranchWiringError(f"Collect step {step.step_id!r} has no inputs", step_id=step.step_id)
        if isinstance(step, RouterStep):
            if not step.input:
                raise BranchWiringError(
                    f"Router step {step.step_id!r} requires a 'candidates' connection",
                    step_id=step.step_id,
                )
            if not step.selection_in:
                raise BranchWiringError(
                    f"Router step {step.step_id!r} requires a 'selection' connection",
                    step_id=step.step_id,
                )
        if isinstance(step, FanOutStep) and not step.out:
            raise BranchWiringError(f"Fan-out step {step.step_id!r} has no branches", step_id=step.step_id)


def plan_branches(pipeline: Pipeline) -> list[BranchRegion]:
    """Compute every fan-out region of ``pipeline``.

    Raises ``BranchWiringError`` when branch-local data could leak outside a
    collect, when a step mixes branches, or when fan-outs are nested.
    """
    _validate_flow_steps(pipeline)
    steps = pipeline.steps

    producer: dict[str, int] = {}
    for idx, step in enumerate(steps):
        for var in step.writes():
            producer[var] = idx

    regions: list[BranchRegion] = []
    # var -> index of the region that owns it
    local_owner: dict[str, int] = {}
    # step index -> fan-out id of the branch it belongs to
    assigned: dict[int, str] = {}

    for k, fan_out in enumerate(steps):
        if not isinstance(fan_out, FanOutStep):
            continue
        locals_: list[set[str]] = [{var} for var in fan_out.out]
        members: list[list[int]] = [[] for _ in fan_out.out]

        for j in range(k + 1, len(steps)):
            step = steps[j]
            if isinstance(step, CollectStep):
                continue
            reads = set(step.reads())
            hits = [b for b, local in enumerate(locals_) if local & reads]
            if not hits:
                continue
            if len(hits) > 1:
                raise BranchWiringError(
                    f"Step {step.step_id!r} reads from several branches of fan-out "
                    f"{fan_out.step_id!r}; gather them with a collect step first",
                    step_id=step.step_id,
                )
            if isinstance(step, FanOutStep):
                raise BranchWiringError(
                    f"Fan-out {step.step_id!r} is nested inside a branch of {fan_out.step_id!r}",
                    step_id=step.step_id,
                )
            if j in assigned:
                raise BranchWiringError(
                    f"Step {step.step_id!r} reads branches of both {assigned[j]!r} and "
                    f"{fan_out.step_id!r}; gather one of them with a collect step first",
                    step_id=step.step_id,
                )
            b = hits[0]
            for var in reads - locals_[b]:
                origin = producer.get(var)
                if origin is not None and origin > k:
                    raise BranchWiringError(
                        f"Step {step.step_id!r} in branch {b} of fan-out {fan_out.step_id!r} "
                        f"reads {var!r}, which is not available when the branch starts",
                        step_id=step.step_id,
                    )
            members[b].append(j)
            assigned[j] = fan_out.step_id
            locals_[b].update(step.writes())

        region_idx = len(regions)
        for local in locals_:
            for var in local:
                local_owner[var] = region_idx
        regions.append(
            BranchRegion(
                fan_out_index=k,
                fan_out_id=fan_out.step_id,
                branch_vars=tuple(fan_out.out),
                branches=tuple(tuple(m) for m in members),
                local_vars=tuple(frozenset(local) for local in locals_),
                collect_indices=(),
            )
        )

    collects: dict[int, list[int]] = {}
    for idx, step in enumerate(steps):
        if not isinstance(step, CollectStep):
            continue
        owners = {local_owner[var] for var in step.inputs if var in local_owner}
        if len(owners) > 1:
            raise BranchWiringError(
                f"Collect step {step.step_id!r} gathers branches of more than one fan-out",
                step_id=step.step_id,
            )
        if owners:
            collects.setdefault(owners.pop(), []).append(idx)

    return [
        BranchRegion(
            fan_out_index=r.fan_out_index,
            fan_out_id=r.fan_out_id,
            branch_vars=r.branch_vars,
            branches=r.branches,
            local_vars=r.local_vars,
            collect_indices=tuple(collects.get(i, [])),
        )
        for i, r in enumerate(regions)
    ]


def _late_inputs(steps: list[Step], k: int) -> list[int]:
    """Indices of top-level steps after fan-out ``k`` that its branches read.

    Returns an empty list when one of them cannot move ahead of the fan-out
    (it is a flow step or it depends on the region itself).
    """
    local = set(steps[k].writes())
    members: set[int] = set()
    for j in range(k + 1, len(steps)):
        step = steps[j]
        if not isinstance(step, CollectStep) and local & set(step.reads()):
            members.add(j)
            local.update(step.writes())

    producer = {var: idx for idx, step in enumerate(steps) for var in step.writes()}
    pending = [var for j in members for var in steps[j].reads() if var not in local]
    needed: set[int] = set()
    while pending:
        origin = producer.get(pending.pop())
        if origin is None or origin < k or origin in needed:
            continue
        step = steps[origin]
        if origin == k or origin in members or isinstance(step, (CollectStep, FanOutStep)):
            return []
        needed.add(origin)
        pending.extend(step.reads())
    return sorted(needed)


def place_branch_inputs(steps: list[Step]) -> list[Step]:
    """Move top-level producers that fan-out branches read ahead of the fan-out.

    Ready-set ordering can put such a producer after the fan-out when both
    become ready together; branches start from a snapshot of the scope at the
    fan-out, so the producer has to run first. Relative order is otherwise
    kept.
    """
    steps = list(steps)
    k = 0
    while k < len(steps):
        if isinstance(steps[k], FanOutStep):
            late = _late_inputs(steps, k)
            if late:
                moved = [steps[i] for i in late]
                rest = [s for i, s in enumerate(steps) if i not in late]
                steps = rest[:k] + moved + rest[k:]
                k += len(moved)
        k += 1
    return steps


def validate_order(pipeline: Pipeline, injected: Iterable[str] = ()) -> None:
    """Check that every variable a step reads was written strictly earlier.

    ``injected`` names variables supplied before the run starts (input nodes).
    Also rejects two steps writing the same variable.
    """
    available = set(injected)
    for step in pipeline.steps:
        for var in step.reads():
            if var not in available:
                raise UnknownReferenceError(
                    f"Step {step.step_id!r} reads {var!r}, which no earlier step produces",
                    step_id=step.step_id,
                )
        for var in step.writes():
            if var in available:
                raise GraphValidationError(
                    f"Variable {var!r} is written more than once",
                    code="DUPLICATE_VARIABLE",
                    step_id=step.step_id,
                )
            available.add(var)
