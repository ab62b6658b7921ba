"""
Core data model for crystaldag workflows.

Jobs are immutable descriptions of one external computation. The job status
state machine lives here as well: every status change in the engine goes
through advance(), which rejects transitions the lifecycle does not allow.

Lifecycle:
    PENDING -> READY -> RUNNING -> {SUCCEEDED | FAILED | CANCELLED | SKIPPED}
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, NewType, Optional, Tuple

from .exceptions import InvalidTransitionError

# 128-bit random identifier, the only graph-node key
JobId = NewType("JobId", uuid.UUID)

# Cosmetic label; drives directory and artifact naming, not unique
SeedName = NewType("SeedName", str)


def new_job_id() -> JobId:
    """Generate a fresh process-unique JobId."""
    return JobId(uuid.uuid4())


def short_id(job_id: JobId) -> str:
    """First 8 hex digits of a JobId, for log messages."""
    return job_id.hex[:8]


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"      # Waiting on dependencies
    READY = "ready"          # Dependencies met, launch in progress
    RUNNING = "running"      # Submitted, handle owned by a monitor
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Stopped by a shutdown request
    SKIPPED = "skipped"      # A dependency failed or was cancelled

    def is_terminal(self) -> bool:
        """Check if this is a final state."""
        return self in _TERMINAL

    def blocks_dependents(self) -> bool:
        """Whether dependents of a job in this state can never run."""
        return self in (JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SKIPPED)


_TERMINAL = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
    JobStatus.SKIPPED,
})


class JobEvent(str, Enum):
    """Events that drive the job state machine."""

    ADMIT = "admit"        # All dependencies succeeded
    START = "start"        # Runner returned a handle
    SUCCEED = "succeed"
    FAIL = "fail"
    CANCEL = "cancel"
    SKIP = "skip"


_TRANSITIONS: Dict[Tuple[JobStatus, JobEvent], JobStatus] = {
    (JobStatus.PENDING, JobEvent.ADMIT): JobStatus.READY,
    (JobStatus.PENDING, JobEvent.SKIP): JobStatus.SKIPPED,
    (JobStatus.PENDING, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.READY, JobEvent.START): JobStatus.RUNNING,
    (JobStatus.READY, JobEvent.FAIL): JobStatus.FAILED,
    (JobStatus.READY, JobEvent.SKIP): JobStatus.SKIPPED,
    (JobStatus.READY, JobEvent.CANCEL): JobStatus.CANCELLED,
    (JobStatus.RUNNING, JobEvent.SUCCEED): JobStatus.SUCCEEDED,
    (JobStatus.RUNNING, JobEvent.FAIL): JobStatus.FAILED,
    (JobStatus.RUNNING, JobEvent.CANCEL): JobStatus.CANCELLED,
}


def advance(current: JobStatus, event: JobEvent) -> JobStatus:
    """
    Apply an event to a job status.

    Args:
        current: Status the job is in
        event: Event being applied

    Returns:
        The next status

    Raises:
        InvalidTransitionError: If the lifecycle does not allow the event
            in the current state (terminal states accept no events)
    """
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot apply '{event.value}' to a job in state '{current.value}'",
            current=current,
            event=event,
        ) from None


@dataclass(frozen=True)
class CommandSpec:
    """
    How to invoke the underlying computation.

    For the local backend this is the executable and its arguments; for
    scheduler backends it is the submission script (plus arguments) handed
    to the submit command.

    Attributes:
        program: Executable or script path
        args: Command-line arguments
        stdin: File (relative to the working dir) fed to standard input
        stdout: File (relative to the working dir) receiving standard output
        env: Extra environment variables
    """

    program: str
    args: Tuple[str, ...] = ()
    stdin: Optional[str] = None
    stdout: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))

    def argv(self) -> List[str]:
        return [self.program, *self.args]


@dataclass(frozen=True)
class CommandHook:
    """An external command run before or after a job."""

    command: str
    args: Tuple[str, ...] = ()
    working_dir: Optional[Path] = None
    timeout: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        if self.working_dir is not None and not isinstance(self.working_dir, Path):
            object.__setattr__(self, "working_dir", Path(self.working_dir))

    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def __str__(self) -> str:
        return " ".join(self.argv())


@dataclass(frozen=True)
class TransformContext:
    """
    What a custom transformation function gets to see.

    parent_dir and parent_seed are None for jobs without a parent.
    """

    parent_dir: Optional[Path]
    parent_seed: Optional[str]
    child_dir: Path
    child_seed: str


# Returns a complete mapping of file name (relative to the child's working
# directory) to content. The engine writes it as-is.
TransformFn = Callable[[TransformContext], Mapping[str, bytes]]


@dataclass(frozen=True)
class Job:
    """
    Immutable description of one external computation.

    Equality and hashing use only the JobId.

    Attributes:
        id: Unique identifier
        seed_name: Label used for directory and artifact naming
        working_dir: Directory the job runs in
        command: How to invoke the computation
        continuation_from: Parent whose continuation artifact this job resumes from
        seed_files: Declared input files copied into working_dir before submission
        pre_hooks: Commands run before submission
        post_hooks: Commands run after the job reaches a terminal state
        transformation: Replaces the default artifact handling when set
        backend: Name of the backend to run on (None = default backend)
    """

    id: JobId
    seed_name: str = field(compare=False)
    working_dir: Path = field(compare=False)
    command: CommandSpec = field(compare=False)
    continuation_from: Optional[JobId] = field(default=None, compare=False)
    seed_files: Tuple[Path, ...] = field(default=(), compare=False)
    pre_hooks: Tuple[CommandHook, ...] = field(default=(), compare=False)
    post_hooks: Tuple[CommandHook, ...] = field(default=(), compare=False)
    transformation: Optional[TransformFn] = field(default=None, compare=False, repr=False)
    backend: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        if not self.seed_name:
            raise ValueError("seed_name must not be empty")
        if not isinstance(self.working_dir, Path):
            object.__setattr__(self, "working_dir", Path(self.working_dir))
        object.__setattr__(self, "seed_files", tuple(Path(p) for p in self.seed_files))
        object.__setattr__(self, "pre_hooks", tuple(self.pre_hooks))
        object.__setattr__(self, "post_hooks", tuple(self.post_hooks))

    @classmethod
    def create(
        cls,
        seed_name: str,
        working_dir: Path,
        command: CommandSpec,
        **kwargs: Any,
    ) -> "Job":
        """Build a job with a freshly generated JobId."""
        return cls(id=new_job_id(), seed_name=seed_name, working_dir=working_dir,
                   command=command, **kwargs)

    def artifact(self, extension: str) -> Path:
        """Path of ``<seed_name><extension>`` inside the working directory."""
        return self.working_dir / f"{self.seed_name}{extension}"

    @property
    def label(self) -> str:
        return f"{self.seed_name}[{short_id(self.id)}]"


@dataclass(frozen=True)
class DependencyEdge:
    """``to_job`` cannot start until ``from_job`` has succeeded."""

    from_job: JobId
    to_job: JobId


@dataclass
class JobOutcome:
    """
    Final result for one job.

    Attributes:
        job_id: The job
        seed_name: The job's seed name
        status: Terminal status
        error: Error detail for FAILED/SKIPPED/CANCELLED jobs
        handle: Backend handle string, if the job was submitted
        post_hook_errors: Messages from failed post-hooks
        cancel_confirmed: False when a cancel was not confirmed in time
    """

    job_id: JobId
    seed_name: str
    status: JobStatus
    error: Optional[str] = None
    handle: Optional[str] = None
    post_hook_errors: List[str] = field(default_factory=list)
    cancel_confirmed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "seed_name": self.seed_name,
            "status": self.status.value,
            "error": self.error,
            "handle": self.handle,
            "post_hook_errors": list(self.post_hook_errors),
            "cancel_confirmed": self.cancel_confirmed,
        }


@dataclass
class RunReport:
    """Per-job outcomes of one execute() call, keyed by JobId."""

    outcomes: Dict[JobId, JobOutcome] = field(default_factory=dict)
    interrupted: bool = False

    @property
    def failed(self) -> bool:
        """A run is failed if any job FAILED."""
        return any(o.status == JobStatus.FAILED for o in self.outcomes.values())

    def status_of(self, job_id: JobId) -> JobStatus:
        return self.outcomes[job_id].status

    def succeeded(self) -> List[JobOutcome]:
        """Partial results: every job that finished successfully."""
        return [o for o in self.outcomes.values() if o.status == JobStatus.SUCCEEDED]

    def by_status(self, status: JobStatus) -> List[JobOutcome]:
        return [o for o in self.outcomes.values() if o.status == status]

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobStatus if s.is_terminal()}
        for outcome in self.outcomes.values():
            counts[outcome.status.value] = counts.get(outcome.status.value, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failed": self.failed,
            "interrupted": self.interrupted,
            "counts": self.counts(),
            "jobs": [o.to_dict() for o in self.outcomes.values()],
        }
