"""Tests for progress events and EventChannel delivery."""

import asyncio
import json

import pytest

from imgflow.core.events import EventChannel, RunCompleted, RunError, RunStarted, StepEvent


class TestWireFormat:
    def test_started(self):
        event = RunStarted(total_steps=2, step_ids=["a", "b"])
        assert event.to_wire() == {
            "type": "execution.started",
            "data": {"totalSteps": 2, "stepIds": ["a", "b"]},
        }

    def test_step_drops_empty_fields(self):
        event = StepEvent(step_id="gen", status="completed", artifact_ref="img_1_abc")
        assert event.to_wire() == {
            "type": "execution.step",
            "data": {"stepId": "gen", "status": "completed", "artifactRef": "img_1_abc"},
        }

    def test_step_branch_fields(self):
        data = StepEvent(
            step_id="gen_1", status="running", branch_id="fan_branch_1", branch_index=1, total_branches=3
        ).data()
        assert data["branchId"] == "fan_branch_1"
        assert data["branchIndex"] == 1
        assert data["totalBranches"] == 3

    def test_branch_index_zero_is_kept(self):
        data = StepEvent(step_id="gen_0", status="running", branch_index=0).data()
        assert data["branchIndex"] == 0

    def test_error(self):
        event = RunError(message="boom", category="provider_error", code="TIMEOUT", retryable=True, step_id="g")
        assert event.to_wire()["data"] == {
            "stepId": "g",
            "message": "boom",
            "category": "provider_error",
            "code": "TIMEOUT",
            "retryable": True,
        }

    def test_sse_framing(self):
        sse = RunCompleted(artifact_ids=["img_1"]).to_sse()
        lines = sse.split("\n")
        assert lines[0] == "event: execution.completed"
        assert json.loads(lines[1].removeprefix("data: ")) == {"artifactIds": ["img_1"]}
        assert sse.endswith("\n\n")


class TestEventChannel:
    def test_drain_in_emission_order(self):
        channel = EventChannel()
        channel.emit(RunStarted(total_steps=1))
        channel.emit(StepEvent(step_id="a", status="running"))
        channel.close()
        events = channel.drain()
        assert [e.type for e in events] == ["execution.started", "execution.step"]
        assert len(channel) == 2

    def test_emit_after_close_is_dropped(self):
        channel = EventChannel()
        channel.close()
        channel.emit(RunStarted(total_steps=1))
        assert channel.drain() == []
        assert channel.history == []

    def test_subscribers_receive_events(self):
        channel = EventChannel()
        seen = []
        channel.subscribe(seen.append)
        channel.emit(StepEvent(step_id="a", status="completed"))
        assert [e.step_id for e in seen] == ["a"]

    def test_failing_subscriber_does_not_stop_delivery(self):
        channel = EventChannel()
        seen = []

        def broken(event):
            raise RuntimeError("disconnected")

        channel.subscribe(broken)
        channel.subscribe(seen.append)
        channel.emit(RunStarted(total_steps=0))
        assert len(seen) == 1
        assert len(channel.drain()) == 1

    @pytest.mark.asyncio
    async def test_async_iteration_stops_at_close(self):
        channel = EventChannel()

        async def produce():
            for i in range(3):
                channel.emit(StepEvent(step_id=f"s{i}", status="completed"))
                await asyncio.sleep(0)
            channel.close()

        consumer_events = []

        async def consume():
            async for event in channel:
                consumer_events.append(event.step_id)

        await asyncio.gather(consume(), produce())
        assert consumer_events == ["s0", "s1", "s2"]
