"""
Backend interfaces: Runner (start/stop) and Monitor (observe).

A backend is a Runner and a Monitor that agree on one handle format, paired
in a Backend value and injected into the orchestrator by name. The
orchestrator never looks inside a handle; it only passes it back to the
runner and monitor that produced it.

Design principles:
- Async/await for all I/O, every external call bounded by a timeout
- Runners are stateless about the graph; they only know jobs and handles
- Poll results are a closed three-state enum; a state the backend cannot
  classify raises StatusError, which the orchestrator counts as unknown
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Sequence

from ..config import EngineSettings
from ..models import Job, JobId

logger = logging.getLogger(__name__)


class PollStatus(str, Enum):
    """What a monitor can say about a handle."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self is not PollStatus.RUNNING


@dataclass(frozen=True)
class JobHandle:
    """
    Backend-specific reference to a started job.

    Attributes:
        backend: Name of the backend that produced the handle
        native_id: PID for local jobs, scheduler job id otherwise
        job_id: The graph job this handle belongs to
        working_dir: Directory the job runs in
        output_file: Main output listing, if the backend knows it
    """

    backend: str
    native_id: str
    job_id: JobId
    working_dir: Path
    output_file: Optional[Path] = None

    def __str__(self) -> str:
        return f"{self.backend}:{self.native_id}"


class Runner(ABC):
    """
    Starts and stops external computations.

    Subclasses must make cancel() idempotent: cancelling a handle that has
    already finished or was already cancelled is not an error.
    """

    name: str = "runner"

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()

    @abstractmethod
    async def submit(self, job: Job) -> JobHandle:
        """
        Start ``job`` and return once a trackable handle exists.

        Raises:
            SubmitError: The invocation could not be started or was rejected
        """
        pass

    @abstractmethod
    async def cancel(self, handle: JobHandle) -> None:
        """
        Stop the computation behind ``handle``.

        Returns once the backend has confirmed the cancellation.

        Raises:
            CancelError: The backend refused or the request failed
        """
        pass


class Monitor(ABC):
    """Observes handles produced by the paired runner."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()

    @abstractmethod
    async def poll(self, handle: JobHandle) -> PollStatus:
        """
        Report the current state of ``handle``.

        Raises:
            StatusError: The state could not be queried (treated as transient)
        """
        pass

    def forget(self, handle: JobHandle) -> None:
        """Drop any per-handle bookkeeping once the handle is terminal."""
        pass


@dataclass(frozen=True)
class Backend:
    """A runner and the monitor that understands its handles."""

    name: str
    runner: Runner
    monitor: Monitor


@dataclass
class CommandResult:
    """Outcome of a short-lived helper command (sbatch, squeue, ...)."""

    exit_status: int
    stdout: str
    stderr: str


async def run_command(
    argv: Sequence[str],
    timeout: Optional[float],
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    """
    Run a command to completion and capture its output.

    Args:
        argv: Program and arguments (no shell involved)
        timeout: Seconds before the command is killed (None = unbounded)
        cwd: Working directory
        env: Extra environment variables layered over os.environ

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        OSError: The program could not be started
        asyncio.TimeoutError: The command exceeded ``timeout``
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=full_env,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        exit_status=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
