"""
Run progress events.

The orchestrator reports progress through an optional callback that
receives these dataclasses. EventStream adapts the callback into an async
iterator for consumers that prefer ``async for``:

    stream = EventStream()
    orchestrator = Orchestrator(graph, backends, event_callback=stream)
    run = asyncio.create_task(orchestrator.execute())
    async for event in stream:
        print(event)
    report = await run
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, Optional

from .models import JobId, JobStatus


@dataclass
class RunEvent:
    """Base class for run events."""

    timestamp: datetime = field(default_factory=datetime.now, init=False)


@dataclass
class RunStarted(RunEvent):
    """Emitted once, before the first job is admitted."""

    total_jobs: int = 0


@dataclass
class JobStatusChanged(RunEvent):
    """Emitted on every job status transition."""

    job_id: Optional[JobId] = None
    seed_name: str = ""
    old_status: JobStatus = JobStatus.PENDING
    new_status: JobStatus = JobStatus.PENDING
    handle: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ShutdownRequested(RunEvent):
    """Emitted when the run starts cancelling outstanding work."""

    reason: str = ""


@dataclass
class RunFinished(RunEvent):
    """Emitted once, after every job reached a terminal state."""

    counts: Dict[str, int] = field(default_factory=dict)
    failed: bool = False
    interrupted: bool = False


class EventStream:
    """
    Callable event sink that can be consumed with ``async for``.

    Iteration ends after RunFinished has been delivered.
    """

    def __init__(self):
        self._queue: "asyncio.Queue[RunEvent]" = asyncio.Queue()
        self._closed = False

    def __call__(self, event: RunEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)
            if isinstance(event, RunFinished):
                self._closed = True

    def __aiter__(self) -> AsyncIterator[RunEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[RunEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, RunFinished):
                return
