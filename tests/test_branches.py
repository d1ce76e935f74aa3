"""Tests for fan-out region planning and pipeline order checks."""

import pytest

from imgflow.core.branches import (
    branch_var,
    parse_branch_handle,
    place_branch_inputs,
    plan_branches,
    validate_order,
)
from imgflow.core.errors import BranchWiringError, GraphValidationError, UnknownReferenceError
from imgflow.core.steps import (
    CollectStep,
    FanOutStep,
    GenerateStep,
    Pipeline,
    SaveStep,
    TextStep,
    TransformStep,
)


def _gen(out: str, prompt_var: str | None = None) -> GenerateStep:
    params = {"_promptFromVar": prompt_var} if prompt_var else {}
    return GenerateStep(generator="stub", params=params, out=out)


def _fan(fan_id: str, n: int, source: str | None = None) -> FanOutStep:
    return FanOutStep(input=source, count=n, out=[branch_var(fan_id, i) for i in range(n)], id=fan_id)


class TestBranchHandles:
    def test_branch_var(self):
        assert branch_var("fan", 2) == "fan_2"

    @pytest.mark.parametrize(
        "handle,expected",
        [("out[0]", 0), ("out[12]", 12), ("out", None), ("out[x]", None), (None, None), ("", None)],
    )
    def test_parse_branch_handle(self, handle, expected):
        assert parse_branch_handle(handle) == expected


class TestPlanBranches:
    def test_no_fan_out_no_regions(self):
        pipeline = Pipeline(steps=[_gen("a"), SaveStep(input="a", destination="x")])
        assert plan_branches(pipeline) == []

    def test_members_follow_branch_chains(self):
        pipeline = Pipeline(
            steps=[
                TextStep(provider="claude", out="p"),
                _fan("fan", 2, "p"),
                _gen("g0", "fan_0"),
                _gen("g1", "fan_1"),
                TransformStep(op="resize", input="g0", out="t0"),
                CollectStep(inputs=["t0", "g1"], out="all"),
                SaveStep(input="all", destination="x"),
            ]
        )
        (region,) = plan_branches(pipeline)
        assert region.fan_out_index == 1
        assert region.fan_out_id == "fan"
        assert region.branches == ((2, 4), (3,))
        assert region.member_indices == {2, 3, 4}
        assert region.collect_indices == (5,)
        assert region.branch_of_var("t0") == 0
        assert region.branch_of_var("g1") == 1
        assert region.branch_of_var("p") is None
        assert region.branch_id(1) == "fan_branch_1"
        assert len(region) == 2

    def test_branch_may_read_variables_from_before_fan_out(self):
        pipeline = Pipeline(
            steps=[
                _gen("base"),
                _fan("fan", 2),
                TransformStep(op="edit", input="base", params={"_promptFromVar": "fan_0"}, out="e0"),
                CollectStep(inputs=["e0"], out="all"),
            ]
        )
        (region,) = plan_branches(pipeline)
        assert region.branches == ((2,), ())

    def test_unused_branch_is_empty(self):
        (region,) = plan_branches(Pipeline(steps=[_fan("fan", 3)]))
        assert region.branches == ((), (), ())
        assert region.collect_indices == ()

    def test_mixing_branches_is_rejected(self):
        pipeline = Pipeline(
            steps=[
                _fan("fan", 2),
                _gen("a", "fan_0"),
                _gen("b", "fan_1"),
                TransformStep(
                    op="blend", input="a", params={"_referenceImageVars": ["b"]}, out="mixed"
                ),
            ]
        )
        with pytest.raises(BranchWiringError, match="several branches") as exc_info:
            plan_branches(pipeline)
        assert exc_info.value.step_id == "mixed"

    def test_nested_fan_out_is_rejected(self):
        pipeline = Pipeline(
            steps=[
                _fan("outer", 2),
                _gen("a", "outer_0"),
                _fan("inner", 2, "a"),
            ]
        )
        with pytest.raises(BranchWiringError, match="nested"):
            plan_branches(pipeline)

    def test_collect_spanning_two_fan_outs_is_rejected(self):
        pipeline = Pipeline(
            steps=[
                _fan("f1", 1),
                _fan("f2", 1),
                _gen("a", "f1_0"),
                _gen("b", "f2_0"),
                CollectStep(inputs=["a", "b"], out="both"),
            ]
        )
        with pytest.raises(BranchWiringError, match="more than one fan-out"):
            plan_branches(pipeline)

    def test_empty_collect_is_rejected(self):
        with pytest.raises(BranchWiringError, match="no inputs"):
            plan_branches(Pipeline(steps=[CollectStep(inputs=[], out="c")]))

    def test_two_independent_regions(self):
        pipeline = Pipeline(
            steps=[
                _fan("f1", 2),
                _gen("a0", "f1_0"),
                _gen("a1", "f1_1"),
                CollectStep(inputs=["a0", "a1"], out="first"),
                _fan("f2", 2, "first"),
                _gen("b0", "f2_0"),
                _gen("b1", "f2_1"),
                CollectStep(inputs=["b0", "b1"], out="second"),
            ]
        )
        first, second = plan_branches(pipeline)
        assert first.collect_indices == (3,)
        assert second.collect_indices == (7,)
        assert second.branches == ((5,), (6,))


class TestValidateOrder:
    def test_valid_pipeline(self):
        validate_order(Pipeline(steps=[_gen("a"), TransformStep(op="blur", input="a", out="b")]))

    def test_read_before_write(self):
        pipeline = Pipeline(steps=[TransformStep(op="blur", input="a", out="b"), _gen("a")])
        with pytest.raises(UnknownReferenceError, match="no earlier step produces"):
            validate_order(pipeline)

    def test_injected_variables_count_as_written(self):
        validate_order(Pipeline(steps=[TransformStep(op="blur", input="photo", out="b")]), injected=["photo"])

    def test_duplicate_write(self):
        with pytest.raises(GraphValidationError) as exc_info:
            validate_order(Pipeline(steps=[_gen("a"), _gen("a")]))
        assert exc_info.value.code == "DUPLICATE_VARIABLE"


class TestPlaceBranchInputs:
    def test_moves_shared_producer_and_its_inputs(self):
        steps = [
            _fan("fan", 2),
            _gen("base"),
            TransformStep(op="stylize", input="base", out="style"),
            TransformStep(op="blend", input="fan_0", params={"_referenceImageVars": ["style"]}, out="b0"),
            _gen("other"),
        ]
        placed = place_branch_inputs(steps)
        assert [s.step_id for s in placed] == ["base", "style", "fan", "b0", "other"]
        plan_branches(Pipeline(steps=placed))

    def test_leaves_order_alone_when_nothing_is_late(self):
        steps = [_gen("style"), _fan("fan", 2), _gen("g0", "fan_0"), _gen("g1", "fan_1")]
        assert place_branch_inputs(steps) == steps

    def test_region_output_cannot_move(self):
        steps = [
            _fan("fan", 2),
            _gen("g0", "fan_0"),
            CollectStep(inputs=["fan_1"], out="all"),
            TextStep(provider="stub", input="all", out="summary"),
            GenerateStep(
                generator="stub",
                params={"_promptFromVar": "fan_0", "_referenceImageVars": ["summary"]},
                out="g0b",
            ),
        ]
        placed = place_branch_inputs(steps)
        assert placed == steps
        with pytest.raises(BranchWiringError, match="not available when the branch starts"):
            plan_branches(Pipeline(steps=placed))
