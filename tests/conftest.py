"""Shared fixtures: fast settings, a scripted fake backend, event collection."""

import asyncio
import itertools
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from crystaldag.config import EngineSettings
from crystaldag.exceptions import CancelError, StatusError, SubmitError
from crystaldag.models import CommandSpec, Job, JobId
from crystaldag.runners.base import Backend, JobHandle, Monitor, PollStatus, Runner


class FakeRunner(Runner):
    """
    Deterministic runner that records every call.

    Jobs whose seed name is in ``fail_submit`` are rejected; ``submit_delay``
    keeps a submission in flight; ``cancel_delay`` slows cancellation down;
    seeds in ``cancel_error`` raise CancelError.
    """

    name = "fake"

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        name: str = "fake",
        fail_submit: Iterable[str] = (),
        submit_delay: Dict[str, float] = None,
        cancel_delay: float = 0.0,
        cancel_error: Iterable[str] = (),
    ):
        super().__init__(settings)
        self.name = name
        self.fail_submit = set(fail_submit)
        self.submit_delay = submit_delay or {}
        self.cancel_delay = cancel_delay
        self.cancel_error = set(cancel_error)
        self.submitted: List[Job] = []
        self.cancelled: List[JobHandle] = []
        # seed -> {file name: text} of the working directory at submit time
        self.staged: Dict[str, Dict[str, str]] = {}
        self.jobs: Dict[JobId, Job] = {}
        self._ids = itertools.count(1000)

    async def submit(self, job: Job) -> JobHandle:
        delay = self.submit_delay.get(job.seed_name, 0.0)
        if delay:
            await asyncio.sleep(delay)
        if job.seed_name in self.fail_submit:
            raise SubmitError(
                f"rejected {job.seed_name}", job_id=job.id, exit_code=1, stderr_output="queue full"
            )
        self.submitted.append(job)
        self.staged[job.seed_name] = {
            path.name: path.read_text(errors="replace")
            for path in job.working_dir.iterdir()
            if path.is_file()
        }
        self.jobs[job.id] = job
        return JobHandle(self.name, str(next(self._ids)), job.id, job.working_dir)

    async def cancel(self, handle: JobHandle) -> None:
        self.cancelled.append(handle)
        if self.cancel_delay:
            await asyncio.sleep(self.cancel_delay)
        if self.jobs[handle.job_id].seed_name in self.cancel_error:
            raise CancelError("scheduler refused", handle=handle, reason="refused")

    @property
    def submitted_seeds(self) -> List[str]:
        return [job.seed_name for job in self.submitted]


class FakeMonitor(Monitor):
    """
    Reports RUNNING for ``polls`` polls, then the scripted verdict.

    On success the job's continuation artifact is written, as a real
    program would leave it behind. Seeds in ``hang`` never finish, seeds in
    ``unknown`` always raise StatusError.
    """

    def __init__(
        self,
        runner: FakeRunner,
        results: Dict[str, PollStatus] = None,
        polls: int = 1,
        hang: Iterable[str] = (),
        unknown: Iterable[str] = (),
        artifact_extension: str = ".chk",
    ):
        super().__init__(runner.settings)
        self.runner = runner
        self.results = results or {}
        self.polls = polls
        self.hang = set(hang)
        self.unknown = set(unknown)
        self.artifact_extension = artifact_extension
        self.poll_counts: Dict[JobHandle, int] = {}
        self.forgotten: List[JobHandle] = []

    async def poll(self, handle: JobHandle) -> PollStatus:
        job = self.runner.jobs[handle.job_id]
        if job.seed_name in self.unknown:
            raise StatusError(f"no state for {handle}", handle=handle)
        count = self.poll_counts[handle] = self.poll_counts.get(handle, 0) + 1
        if job.seed_name in self.hang or count <= self.polls:
            return PollStatus.RUNNING

        verdict = self.results.get(job.seed_name, PollStatus.SUCCEEDED)
        if verdict == PollStatus.SUCCEEDED:
            job.artifact(self.artifact_extension).write_text(f"wavefunction of {job.seed_name}")
        return verdict

    def forget(self, handle: JobHandle) -> None:
        self.forgotten.append(handle)


@pytest.fixture
def settings():
    """Settings tuned for fast tests."""
    return EngineSettings(
        poll_interval=0.01,
        poll_timeout=1.0,
        cancel_grace_period=0.5,
        shutdown_grace_window=1.0,
        max_unknown_polls=3,
        continuation_extension=".chk",
    )


@pytest.fixture
def make_backend(settings):
    """Factory for fake backends: make_backend(results=..., hang=..., ...)."""

    def _make(name: str = "fake", **kwargs) -> Backend:
        runner_keys = {"fail_submit", "submit_delay", "cancel_delay", "cancel_error"}
        runner = FakeRunner(
            settings, name=name, **{k: v for k, v in kwargs.items() if k in runner_keys}
        )
        monitor = FakeMonitor(runner, **{k: v for k, v in kwargs.items() if k not in runner_keys})
        return Backend(name=name, runner=runner, monitor=monitor)

    return _make


@pytest.fixture
def command():
    return CommandSpec("crystalOMP")


@pytest.fixture
def event_collector():
    """Create an event collector for testing."""
    events = []

    def collect(event):
        events.append(event)

    collect.events = events
    return collect


@pytest.fixture
def script_dir(tmp_path):
    """Directory for generated mock executables."""
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def make_script(script_dir):
    """Write an executable bash script and return its path."""

    def _make(name: str, body: str) -> Path:
        path = script_dir / name
        path.write_text("#!/bin/bash\n" + body)
        path.chmod(0o755)
        return path

    return _make
