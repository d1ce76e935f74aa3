"""Progress events and the ordered channel they are delivered through.

Wire shape: ``{"type": "execution.<name>", "data": {...}}``, which is also
what ``to_sse()`` frames as a server-sent event. Delivery is at-most-once and
in emission order; a consumer that disconnects just stops receiving.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

StepStatusName = Literal["running", "completed", "error", "skipped"]


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class _WireEvent:
    type: str

    def data(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data()}

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data())}\n\n"


@dataclass
class RunStarted(_WireEvent):
    total_steps: int
    step_ids: list[str] = field(default_factory=list)

    type = "execution.started"

    def data(self) -> dict[str, Any]:
        return {"totalSteps": self.total_steps, "stepIds": list(self.step_ids)}


@dataclass
class StepEvent(_WireEvent):
    step_id: str
    status: StepStatusName
    artifact_ref: str | None = None
    text_payload: str | None = None
    branch_id: str | None = None
    branch_index: int | None = None
    total_branches: int | None = None
    error: dict[str, Any] | None = None
    skip_reason: str | None = None

    type = "execution.step"

    def data(self) -> dict[str, Any]:
        return _compact(
            {
                "stepId": self.step_id,
                "status": self.status,
                "artifactRef": self.artifact_ref,
                "textPayload": self.text_payload,
                "branchId": self.branch_id,
                "branchIndex": self.branch_index,
                "totalBranches": self.total_branches,
                "error": self.error,
                "skipReason": self.skip_reason,
            }
        )


@dataclass
class RunCompleted(_WireEvent):
    artifact_ids: list[str] = field(default_factory=list)

    type = "execution.completed"

    def data(self) -> dict[str, Any]:
        return {"artifactIds": list(self.artifact_ids)}


@dataclass
class RunError(_WireEvent):
    message: str
    category: str
    code: str
    retryable: bool = False
    step_id: str | None = None

    type = "execution.error"

    def data(self) -> dict[str, Any]:
        return _compact(
            {
                "stepId": self.step_id,
                "message": self.message,
                "category": self.category,
                "code": self.code,
                "retryable": self.retryable,
            }
        )


Event = RunStarted | StepEvent | RunCompleted | RunError


_CLOSED = object()


class EventChannel:
    """Ordered, single-consumer event queue for one run.

    The scheduler calls ``emit`` (never blocks) and ``close`` when the run
    ends. Async consumers iterate the channel; sync consumers call
    ``drain()`` after the run. Every emitted event is also kept in
    ``history`` and forwarded to ``subscribe``d callbacks.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._subscribers: list[Callable[[Event], None]] = []
        self.history: list[Event] = []
        self.closed = False

    def subscribe(self, handler: Callable[[Event], None]) -> None:
        self._subscribers.append(handler)

    def emit(self, event: Event) -> None:
        if self.closed:
            logger.debug("Dropping %s emitted after close", event.type)
            return
        self.history.append(event)
        self._queue.put_nowait(event)
        for handler in self._subscribers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event.type)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    def drain(self) -> list[Event]:
        """Pop every queued event without waiting."""
        events: list[Event] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                continue
            events.append(item)
        return events

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def __len__(self) -> int:
        return len(self.history)
