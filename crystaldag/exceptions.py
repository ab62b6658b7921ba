"""
Exception hierarchy for the crystaldag workflow engine.

Errors fall into three groups:

- Construction errors (GraphError, ConfigurationError) are raised
  synchronously while a workflow is being defined and are fatal to the run.
- Job-level errors (TransformError, SubmitError, HookError) are caught by the
  orchestrator, mark the affected job FAILED and cascade to its dependents.
- Backend errors during shutdown (CancelError) are logged and never block
  shutdown progress.
"""

from pathlib import Path
from typing import Optional


class CrystalDagError(Exception):
    """
    Base exception for all crystaldag errors.

    All package exceptions inherit from this class to allow
    generic error handling at the application level.
    """
    pass


class ConfigurationError(CrystalDagError):
    """
    Raised when engine settings or a workflow file are invalid.

    Attributes:
        config_key: The configuration key that is invalid
        source: File the configuration was read from, if any
    """

    def __init__(self, message: str, config_key: str = "", source: Optional[Path] = None):
        super().__init__(message)
        self.config_key = config_key
        self.source = source


# -------------------------------------------------------------------------
# Graph construction
# -------------------------------------------------------------------------


class GraphError(CrystalDagError):
    """Base class for errors detected while building a job graph."""
    pass


class DuplicateIdError(GraphError):
    """Raised when a job with the same JobId is already in the graph."""

    def __init__(self, message: str, job_id=None):
        super().__init__(message)
        self.job_id = job_id


class DanglingContinuationError(GraphError):
    """Raised when continuation_from references a job not in the graph."""

    def __init__(self, message: str, job_id=None, missing_id=None):
        super().__init__(message)
        self.job_id = job_id
        self.missing_id = missing_id


class WouldCycleError(GraphError):
    """
    Raised when adding a dependency edge would create a cycle.

    Attributes:
        from_job: Edge source (the job that must finish first)
        to_job: Edge target (the dependent job)
    """

    def __init__(self, message: str, from_job=None, to_job=None):
        super().__init__(message)
        self.from_job = from_job
        self.to_job = to_job


class UnknownJobError(GraphError):
    """Raised when an operation references a JobId that is not in the graph."""

    def __init__(self, message: str, job_id=None):
        super().__init__(message)
        self.job_id = job_id


class GraphFrozenError(GraphError):
    """Raised when a builder is mutated after build() was called."""
    pass


class InvalidTransitionError(CrystalDagError):
    """
    Raised when a job status change is not allowed by the state machine.

    Attributes:
        current: Status the job was in
        event: Event that was applied
    """

    def __init__(self, message: str, current=None, event=None):
        super().__init__(message)
        self.current = current
        self.event = event


# -------------------------------------------------------------------------
# Artifact transformation
# -------------------------------------------------------------------------


class TransformError(CrystalDagError):
    """
    Base class for failures preparing a child job's input files.

    Attributes:
        job_id: The child job whose inputs could not be prepared
        path: The file involved, if known
    """

    def __init__(self, message: str, job_id=None, path: Optional[Path] = None):
        super().__init__(message)
        self.job_id = job_id
        self.path = path


class SourceArtifactMissingError(TransformError):
    """Raised when a parent artifact or declared seed file does not exist."""
    pass


class WriteFailureError(TransformError):
    """Raised when a prepared file cannot be written to the child's directory."""
    pass


# -------------------------------------------------------------------------
# Backends
# -------------------------------------------------------------------------


class RunnerError(CrystalDagError):
    """Base class for execution backend errors."""
    pass


class SubmitError(RunnerError):
    """
    Raised when a job cannot be started or the scheduler rejects it.

    Attributes:
        job_id: The job that failed to submit
        exit_code: Exit code of the submission command, if it ran
        stderr_output: Captured standard error of the submission command
    """

    def __init__(
        self,
        message: str,
        job_id=None,
        exit_code: Optional[int] = None,
        stderr_output: str = ""
    ):
        super().__init__(message)
        self.job_id = job_id
        self.exit_code = exit_code
        self.stderr_output = stderr_output


class CancelError(RunnerError):
    """
    Raised when job cancellation fails.

    Attributes:
        handle: The job handle that could not be cancelled
        reason: Specific reason for cancellation failure
    """

    def __init__(self, message: str, handle=None, reason: str = ""):
        super().__init__(message)
        self.handle = handle
        self.reason = reason


class StatusError(RunnerError):
    """Raised when a status query cannot be run or parsed."""

    def __init__(self, message: str, handle=None):
        super().__init__(message)
        self.handle = handle


class BackendUnavailableError(RunnerError):
    """
    Raised when a backend cannot be initialized (e.g. scheduler CLI missing).

    Attributes:
        backend: Name of the backend
        missing: The command that could not be found
    """

    def __init__(self, message: str, backend: str = "", missing: str = ""):
        super().__init__(message)
        self.backend = backend
        self.missing = missing


# -------------------------------------------------------------------------
# Hooks
# -------------------------------------------------------------------------


class HookError(CrystalDagError):
    """
    Raised when a pre/post hook command fails.

    Attributes:
        command: The hook command that failed
        exit_code: Process exit code, None if it never started or timed out
        stderr_output: Captured standard error
    """

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: Optional[int] = None,
        stderr_output: str = ""
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr_output = stderr_output
